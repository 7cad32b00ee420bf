"""Typed configuration loading and access.

The whole pipeline is driven by one ``shipit.toml``:

    [repo]
    owner = "coq"
    name = "rocq-prover.org"

    [companion]
    owner = "coq"
    name = "doc"

    [slots.production]
    port = 8000
    context = "Deployment on rocq-prover.org"

Every section except ``[repo]`` is optional. The resulting ``Config`` is
passed explicitly to the engine; there is no process-wide instance.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal

from .repo import RepoId
from .result import Err, Ok, Result
from .structured import StrDict, as_str_dict, get_bool, get_float, get_int, get_str, get_table

__all__ = [
    "BranchesConfig",
    "CompanionConfig",
    "Config",
    "ConfigError",
    "PipelineConfig",
    "SlotConfig",
    "StatusConfig",
    "load_config",
    "DEFAULT_CONFIG_NAME",
    "PRODUCTION_PORT",
    "STAGING_PORT",
]

DEFAULT_CONFIG_NAME = "shipit.toml"

PRODUCTION_PORT = 8000
STAGING_PORT = 8010

DEFAULT_STALENESS_DAYS = 90
DEFAULT_POOL_CAPACITY = 1
DEFAULT_POLL_INTERVAL_SECONDS = 300.0

SlotKind = Literal["production", "staging"]


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded or parsed."""

    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class BranchesConfig:
    """Branches that are deployed rather than only built."""

    primary: str = "main"
    staging: str = "staging"


@dataclass(frozen=True, slots=True)
class CompanionConfig:
    """Secondary repository whose head is bound into every deployment."""

    repo: RepoId
    branch: str = "master"
    env_var: str = "DOC_PATH"


@dataclass(frozen=True, slots=True)
class SlotConfig:
    """One deployment target.

    Attributes:
        kind: Which slot this is.
        name: Compose project name; also the cache target for deploys.
        port: External port exported as ``LOCAL_PORT``.
        context: Status context the deployment is reported under.
    """

    kind: SlotKind
    name: str
    port: int
    context: str


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    staleness_days: int = DEFAULT_STALENESS_DAYS
    pool_capacity: int = DEFAULT_POOL_CAPACITY
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    dockerfile: str = "Dockerfile"
    compose_file: str = "compose.yml"
    project: str = "www"
    state_dir: Path = Path(".shipit")
    cache_ttl_seconds: float | None = None
    pull: bool = True


@dataclass(frozen=True, slots=True)
class StatusConfig:
    build_context: str = "Docker image build"
    url: str | None = None
    publish_attempts: int = 3
    publish_delay_seconds: float = 1.0


@dataclass(frozen=True, slots=True)
class Config:
    """Main configuration container."""

    repo: RepoId
    production: SlotConfig
    staging: SlotConfig
    companion: CompanionConfig | None = None
    branches: BranchesConfig = field(default_factory=BranchesConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    status: StatusConfig = field(default_factory=StatusConfig)

    @property
    def slots(self) -> tuple[SlotConfig, SlotConfig]:
        return (self.production, self.staging)

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, base_dir: Path | None = None) -> Config:
        """Create Config from a mapping (parsed TOML).

        A key that is present with the wrong type is an error, never a silent
        fallback to its default.

        Raises:
            ValueError: If a value is missing, mistyped or out of range.
        """
        repo_tbl: StrDict = _table(data, "", "repo") or {}
        companion_tbl = _table(data, "", "companion")
        branches_tbl: StrDict = _table(data, "", "branches") or {}
        pipeline_tbl: StrDict = _table(data, "", "pipeline") or {}
        slots_tbl: StrDict = _table(data, "", "slots") or {}
        status_tbl: StrDict = _table(data, "", "status") or {}

        repo = _repo_from(repo_tbl, section="repo")

        companion: CompanionConfig | None = None
        if companion_tbl is not None:
            companion = CompanionConfig(
                repo=_repo_from(companion_tbl, section="companion"),
                branch=_str(companion_tbl, "companion", "branch") or "master",
                env_var=_str(companion_tbl, "companion", "env_var") or "DOC_PATH",
            )

        branches = BranchesConfig(
            primary=_str(branches_tbl, "branches", "primary") or "main",
            staging=_str(branches_tbl, "branches", "staging") or "staging",
        )

        state_dir = Path(_str(pipeline_tbl, "pipeline", "state_dir") or ".shipit").expanduser()
        if base_dir is not None and not state_dir.is_absolute():
            state_dir = base_dir / state_dir

        pipeline = PipelineConfig(
            staleness_days=_or_default(
                _int(pipeline_tbl, "pipeline", "staleness_days"), DEFAULT_STALENESS_DAYS
            ),
            pool_capacity=_or_default(
                _int(pipeline_tbl, "pipeline", "pool_capacity"), DEFAULT_POOL_CAPACITY
            ),
            poll_interval_seconds=_or_default(
                _float(pipeline_tbl, "pipeline", "poll_interval_seconds"),
                DEFAULT_POLL_INTERVAL_SECONDS,
            ),
            dockerfile=parse_repo_path(
                _str(pipeline_tbl, "pipeline", "dockerfile") or "Dockerfile", what="dockerfile"
            ),
            compose_file=parse_repo_path(
                _str(pipeline_tbl, "pipeline", "compose_file") or "compose.yml", what="compose_file"
            ),
            project=_str(pipeline_tbl, "pipeline", "project") or "www",
            state_dir=state_dir,
            cache_ttl_seconds=_float(pipeline_tbl, "pipeline", "cache_ttl_seconds"),
            pull=_or_default(_bool(pipeline_tbl, "pipeline", "pull"), True),
        )

        production_tbl: StrDict = _table(slots_tbl, "slots", "production") or {}
        staging_tbl: StrDict = _table(slots_tbl, "slots", "staging") or {}
        production = SlotConfig(
            kind="production",
            name=_str(production_tbl, "slots.production", "name")
            or f"{pipeline.project}_{branches.primary}",
            port=_or_default(_int(production_tbl, "slots.production", "port"), PRODUCTION_PORT),
            context=_str(production_tbl, "slots.production", "context")
            or f"Deployment on {repo.name}",
        )
        staging = SlotConfig(
            kind="staging",
            name=_str(staging_tbl, "slots.staging", "name") or f"{pipeline.project}_{branches.staging}",
            port=_or_default(_int(staging_tbl, "slots.staging", "port"), STAGING_PORT),
            context=_str(staging_tbl, "slots.staging", "context")
            or f"Deployment on staging.{repo.name}",
        )

        status = StatusConfig(
            build_context=_str(status_tbl, "status", "build_context")
            or f"Docker image build for {repo.name}",
            url=_str(status_tbl, "status", "url"),
            publish_attempts=_or_default(_int(status_tbl, "status", "publish_attempts"), 3),
            publish_delay_seconds=_or_default(
                _float(status_tbl, "status", "publish_delay_seconds"), 1.0
            ),
        )

        config = cls(
            repo=repo,
            production=production,
            staging=staging,
            companion=companion,
            branches=branches,
            pipeline=pipeline,
            status=status,
        )
        _validate(config)
        return config


def parse_repo_path(raw: str, *, what: str = "dockerfile") -> str:
    """Normalise a path to a file of the checkout; it must stay inside it.

    Raises:
        ValueError: If the path cannot be used as a relative file path.
    """
    if "\x00" in raw:
        raise ValueError(f"invalid {what} path: {raw!r}")
    path = PurePosixPath(raw)
    if path.is_absolute() or ".." in path.parts or str(path) in ("", "."):
        raise ValueError(f"{what} must be a relative path inside the repository: {raw!r}")
    return str(path)


def _check(
    table: Mapping[str, object], section: str, key: str, types: tuple[type, ...], expected: str
) -> None:
    value = table.get(key)
    if value is None:
        return
    # bool is an int subclass.
    if isinstance(value, types) and (bool in types or not isinstance(value, bool)):
        return
    name = f"{section}.{key}" if section else key
    raise ValueError(f"{name} must be {expected}, got {value!r}")


def _str(table: Mapping[str, object], section: str, key: str) -> str | None:
    _check(table, section, key, (str,), "a string")
    return get_str(table, key)


def _int(table: Mapping[str, object], section: str, key: str) -> int | None:
    _check(table, section, key, (int,), "an integer")
    return get_int(table, key)


def _float(table: Mapping[str, object], section: str, key: str) -> float | None:
    _check(table, section, key, (int, float), "a number")
    return get_float(table, key)


def _bool(table: Mapping[str, object], section: str, key: str) -> bool | None:
    _check(table, section, key, (bool,), "true or false")
    return get_bool(table, key)


def _table(table: Mapping[str, object], section: str, key: str) -> StrDict | None:
    _check(table, section, key, (dict,), "a table")
    return get_table(table, key)


def _repo_from(table: Mapping[str, object], *, section: str) -> RepoId:
    owner = _str(table, section, "owner")
    name = _str(table, section, "name")
    if owner is None or name is None:
        raise ValueError(f"[{section}] requires 'owner' and 'name'")
    return RepoId(owner=owner, name=name)


def _or_default[T](value: T | None, default: T) -> T:
    return default if value is None else value


def _validate(config: Config) -> None:
    pipeline = config.pipeline
    if pipeline.pool_capacity < 1:
        raise ValueError("pipeline.pool_capacity must be >= 1")
    if pipeline.staleness_days < 1:
        raise ValueError("pipeline.staleness_days must be >= 1")
    if pipeline.poll_interval_seconds <= 0:
        raise ValueError("pipeline.poll_interval_seconds must be > 0")
    if pipeline.cache_ttl_seconds is not None and pipeline.cache_ttl_seconds <= 0:
        raise ValueError("pipeline.cache_ttl_seconds must be > 0")
    if config.branches.primary == config.branches.staging:
        raise ValueError("branches.primary and branches.staging must differ")
    if config.production.port == config.staging.port:
        raise ValueError("production and staging slots must use distinct ports")
    if config.production.name == config.staging.name:
        raise ValueError("production and staging slots must use distinct names")
    for slot in config.slots:
        if not 0 < slot.port < 65536:
            raise ValueError(f"slots.{slot.kind}.port out of range: {slot.port}")
    if config.status.publish_attempts < 1:
        raise ValueError("status.publish_attempts must be >= 1")


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling read and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[Config, ConfigError]:
    """Load and validate configuration from a TOML file.

    Relative ``pipeline.state_dir`` values are resolved against the directory
    containing the config file.

    Returns:
        Ok(Config) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        return Ok(Config.from_dict(result.value, base_dir=path.parent))
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config: {e}", path=path))
