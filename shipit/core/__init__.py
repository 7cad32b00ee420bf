"""Core types shared by every layer."""

from .config import Config, ConfigError, load_config
from .errors import ErrorCode
from .repo import RepoId
from .result import Err, Ok, Result

__all__ = [
    # config
    "Config",
    "ConfigError",
    "load_config",
    # errors
    "ErrorCode",
    # repo
    "RepoId",
    # result
    "Err",
    "Ok",
    "Result",
]
