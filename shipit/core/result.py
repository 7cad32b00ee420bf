"""Result type for explicit error handling.

Every operation that talks to the outside world (``gh``, ``git``, ``docker``,
the config file) returns ``Ok(value)`` or ``Err(error)`` instead of raising.
Callers branch with ``isinstance`` or pattern matching:

    match fetch_head(repo):
        case Ok(sha):
            ...
        case Err(error):
            console.warning(error.message)
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["Err", "Ok", "Result"]


@dataclass(frozen=True, slots=True)
class Ok[T]:
    """Successful outcome carrying ``value``."""

    value: T

    def unwrap(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err[E]:
    """Failed outcome carrying ``error``."""

    error: E

    def unwrap(self) -> None:
        """Raise, since there is no value.

        Raises:
            ValueError: Always, containing the error.
        """
        raise ValueError(f"called unwrap on Err: {self.error}")

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


type Result[T, E] = Ok[T] | Err[E]
