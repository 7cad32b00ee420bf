"""GitHub repository identity."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["RepoId"]


@dataclass(frozen=True, slots=True, order=True)
class RepoId:
    owner: str
    name: str

    @property
    def slug(self) -> str:
        """``owner/name`` as used by the GitHub API."""
        return f"{self.owner}/{self.name}"

    @property
    def clone_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}.git"

    def __str__(self) -> str:
        return self.slug
