from __future__ import annotations

from shipit.core.repo import RepoId
from shipit.pipeline.model import ActionKey, Failure, Pending, Reference, Success, is_terminal

REPO = RepoId("coq", "rocq-prover.org")


class TestReference:
    def test_branch(self) -> None:
        ref = Reference(REPO, "branch", "main", "c" * 40)
        assert ref.branch == "main"
        assert ref.key == "refs/heads/main"
        assert ref.label == "coq/rocq-prover.org@main"
        assert ref.short_commit == "cccccccc"

    def test_pull_has_no_branch(self) -> None:
        ref = Reference(REPO, "pull", "42", "c" * 40)
        assert ref.branch is None
        assert ref.key == "refs/pull/42/head"
        assert ref.label == "coq/rocq-prover.org#42"


class TestActionKey:
    def test_digest_is_order_insensitive(self) -> None:
        a = ActionKey.of("build", "t", {"commit": "x", "dockerfile": "Dockerfile"})
        b = ActionKey.of("build", "t", {"dockerfile": "Dockerfile", "commit": "x"})
        assert a == b

    def test_any_input_changes_digest(self) -> None:
        a = ActionKey.of("deploy", "www_main", {"commit": "x", "env:DOC_PATH": "/a"})
        b = ActionKey.of("deploy", "www_main", {"commit": "x", "env:DOC_PATH": "/b"})
        assert a != b
        assert a.slot == b.slot

    def test_str(self) -> None:
        key = ActionKey("build", "target", "0123456789abcdef")
        assert key.short == "01234567"
        assert str(key) == "build:target@01234567"


def test_terminal_states() -> None:
    assert not is_terminal(Pending("job"))
    assert is_terminal(Success())
    assert is_terminal(Failure("boom"))
