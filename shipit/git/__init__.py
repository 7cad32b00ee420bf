"""Git operations: fetching commits into immutable local trees."""

from shipit.git.checkout import CheckoutStore, CommitSnapshot, GitError

__all__ = ["CheckoutStore", "CommitSnapshot", "GitError"]
