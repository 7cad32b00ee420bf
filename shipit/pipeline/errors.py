from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DiscoveryError:
    """Metadata for one reference (or the listing itself) could not be fetched.

    Transient: the reference keeps its previous state and is retried on the
    next discovery cycle.
    """

    subject: str
    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class PublicationError:
    """A status could not be published after every retry."""

    context: str
    ref: str
    message: str
    attempts: int
