from __future__ import annotations

from shipit.core.errors import ErrorCode


def test_exit_codes_are_stable() -> None:
    assert int(ErrorCode.CONFIG_ERROR) == 2
    assert int(ErrorCode.ENV_ERROR) == 3
    assert int(ErrorCode.NETWORK_ERROR) == 4


def test_str() -> None:
    assert str(ErrorCode.CONFIG_ERROR) == "config error"
