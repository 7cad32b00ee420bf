"""Tests for shipit.git.checkout module."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path

from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.git.checkout import CheckoutStore
from shipit.platform.process import ProcessError

REPO = RepoId("coq", "rocq-prover.org")
SHA = "a" * 40


class FakeGit:
    """Plays git: ``init`` creates ``.git``, ``checkout`` writes a file, ``rev-parse`` echoes the sha."""

    def __init__(self, *, fail: str | None = None) -> None:
        self.fail = fail
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del env, timeout
        assert cmd[:3] == ["git", "-C", str(cwd)]
        sub = cmd[3]
        with self._lock:
            self.calls.append(sub)
        if sub == self.fail:
            return Err(ProcessError(tuple(cmd), 128, "", f"fatal: {sub} exploded"))
        if sub == "init":
            (cwd / ".git").mkdir()
        elif sub == "checkout":
            (cwd / "Dockerfile").write_text("FROM scratch\n", encoding="utf-8")
        elif sub == "rev-parse":
            return Ok(cwd.name + "\n")
        return Ok("")


def test_path_layout(tmp_path: Path) -> None:
    store = CheckoutStore(tmp_path, runner=FakeGit())
    assert store.path_for(REPO, SHA) == tmp_path / "coq" / "rocq-prover.org" / SHA


def test_fetch_populates_tree(tmp_path: Path) -> None:
    git = FakeGit()
    store = CheckoutStore(tmp_path, runner=git)

    result = store.fetch(REPO, SHA)

    assert isinstance(result, Ok)
    assert result.value.path == store.path_for(REPO, SHA)
    assert (result.value.path / "Dockerfile").is_file()
    assert git.calls == ["init", "fetch", "checkout"]
    assert not list(result.value.path.parent.glob(".*.tmp"))


def test_fetch_reuses_existing_checkout(tmp_path: Path) -> None:
    git = FakeGit()
    store = CheckoutStore(tmp_path, runner=git)
    store.fetch(REPO, SHA)
    git.calls.clear()

    result = store.fetch(REPO, SHA)

    assert isinstance(result, Ok)
    assert git.calls == ["rev-parse"]


def test_fetch_replaces_incomplete_directory(tmp_path: Path) -> None:
    git = FakeGit()
    store = CheckoutStore(tmp_path, runner=git)
    leftover = store.path_for(REPO, SHA)
    leftover.mkdir(parents=True)
    (leftover / "junk").write_text("x", encoding="utf-8")

    result = store.fetch(REPO, SHA)

    assert isinstance(result, Ok)
    assert not (leftover / "junk").exists()
    assert (leftover / ".git").is_dir()


def test_fetch_failure_leaves_nothing_behind(tmp_path: Path) -> None:
    store = CheckoutStore(tmp_path, runner=FakeGit(fail="fetch"))

    result = store.fetch(REPO, SHA)

    assert isinstance(result, Err)
    assert result.error.command == "fetch"
    assert result.error.returncode == 128
    assert "exploded" in result.error.message
    parent = store.path_for(REPO, SHA).parent
    assert list(parent.iterdir()) == []


def test_concurrent_fetches_of_one_commit_fetch_once(tmp_path: Path) -> None:
    git = FakeGit()
    store = CheckoutStore(tmp_path, runner=git)
    results: list[object] = []

    def worker() -> None:
        results.append(store.fetch(REPO, SHA))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(isinstance(r, Ok) for r in results)
    assert git.calls.count("fetch") == 1
    assert len(store._locks) == 0  # pyright: ignore[reportPrivateUsage]


def test_prune_removes_unkept_commits(tmp_path: Path) -> None:
    store = CheckoutStore(tmp_path, runner=FakeGit())
    doc = RepoId("coq", "doc")
    old, new = "1" * 40, "2" * 40
    for repo, sha in ((REPO, old), (REPO, new), (doc, SHA)):
        store.fetch(repo, sha)
    stale_tmp = store.path_for(REPO, old).with_name(f".{old}.deadbeef.tmp")
    stale_tmp.mkdir()

    removed = store.prune({(REPO, new), (doc, SHA)})

    assert sorted(removed) == sorted([store.path_for(REPO, old), stale_tmp])
    assert not store.path_for(REPO, old).exists()
    assert store.path_for(REPO, new).is_dir()
    assert store.path_for(doc, SHA).is_dir()


def test_prune_skips_commit_being_fetched(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()
    git = FakeGit()

    def slow_git(
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        if cmd[3] == "fetch":
            entered.set()
            release.wait(5)
        return git(cmd, cwd, env, timeout=timeout)

    store = CheckoutStore(tmp_path, runner=slow_git)
    thread = threading.Thread(target=store.fetch, args=(REPO, SHA))
    thread.start()
    try:
        assert entered.wait(5)
        assert store.prune(set()) == []
    finally:
        release.set()
        thread.join(5)

    assert (store.path_for(REPO, SHA) / "Dockerfile").is_file()


def test_prune_without_root(tmp_path: Path) -> None:
    assert CheckoutStore(tmp_path / "missing", runner=FakeGit()).prune(set()) == []
