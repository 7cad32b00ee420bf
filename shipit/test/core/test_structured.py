from __future__ import annotations

from datetime import datetime, timezone

from shipit.core.repo import RepoId
from shipit.core.structured import (
    as_obj_list,
    as_str_dict,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_timestamp,
)


def test_as_str_dict_rejects_non_string_keys() -> None:
    assert as_str_dict({"a": 1}) == {"a": 1}
    assert as_str_dict({1: "a"}) is None
    assert as_str_dict([1]) is None


def test_as_obj_list() -> None:
    assert as_obj_list([1, "a"]) == [1, "a"]
    assert as_obj_list({"a": 1}) is None


def test_scalar_getters() -> None:
    table: dict[str, object] = {"s": "  x ", "blank": "  ", "i": 3, "b": True, "f": 1}
    assert get_str(table, "s") == "x"
    assert get_str(table, "blank") is None
    assert get_int(table, "i") == 3
    assert get_int(table, "b") is None
    assert get_float(table, "f") == 1.0
    assert get_float(table, "b") is None
    assert get_bool(table, "b") is True
    assert get_bool(table, "i") is None


def test_get_timestamp_github_format() -> None:
    table: dict[str, object] = {"date": "2024-05-01T12:30:00Z", "bad": "yesterday"}
    assert get_timestamp(table, "date") == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    assert get_timestamp(table, "bad") is None
    assert get_timestamp(table, "missing") is None


class TestRepoId:
    def test_slug_and_clone_url(self) -> None:
        repo = RepoId("coq", "doc")
        assert repo.slug == "coq/doc"
        assert str(repo) == "coq/doc"
        assert repo.clone_url == "https://github.com/coq/doc.git"
