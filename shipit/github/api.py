"""GitHub access through the ``gh`` CLI.

Reads go through ``run_gh_read`` which retries transient failures (HTTP 5xx,
429, timeouts, connection resets) with a linear backoff. Writes are never
retried here; the status reporter owns that policy.
"""

from __future__ import annotations

import json
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from time import sleep
from typing import Literal
from urllib.parse import quote

from shipit.core.repo import RepoId
from shipit.core.result import Err, Ok, Result
from shipit.core.structured import as_obj_list, as_str_dict, get_int, get_str, get_table, get_timestamp
from shipit.platform.process import ProcessError
from shipit.platform.process import run as run_process

GH_TIMEOUT_SECONDS = 60.0
GH_READ_RETRY_ATTEMPTS = 3
GH_READ_RETRY_DELAY_SECONDS = 1.0

_PER_PAGE = 100

GithubErrorKind = Literal[
    "gh_missing",
    "gh_auth_required",
    "request_failed",
    "invalid_payload",
]


@dataclass(frozen=True, slots=True)
class GithubError:
    kind: GithubErrorKind
    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class RemoteBranch:
    name: str
    sha: str


@dataclass(frozen=True, slots=True)
class RemotePull:
    number: int
    sha: str


@dataclass(frozen=True, slots=True)
class CheckRunFields:
    """Payload of a check run create/update call."""

    name: str
    head_sha: str
    status: Literal["queued", "in_progress", "completed"]
    title: str
    summary: str
    text: str | None = None
    conclusion: Literal["success", "failure"] | None = None
    details_url: str | None = None
    external_id: str | None = None

    def as_form(self) -> dict[str, str]:
        form = {
            "name": self.name,
            "head_sha": self.head_sha,
            "status": self.status,
            "output[title]": self.title,
            "output[summary]": self.summary,
        }
        if self.text is not None:
            form["output[text]"] = self.text
        if self.conclusion is not None:
            form["conclusion"] = self.conclusion
        if self.details_url is not None:
            form["details_url"] = self.details_url
        if self.external_id is not None:
            form["external_id"] = self.external_id
        return form


def _is_transient_gh_error(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    markers = (
        "timed out",
        "timeout",
        "connection reset",
        "connection refused",
        "temporarily unavailable",
        "service unavailable",
        "bad gateway",
        "gateway timeout",
        "tls handshake timeout",
        "network is unreachable",
        "http 429",
        "http 500",
        "http 502",
        "http 503",
        "http 504",
    )
    if error.returncode == -1 and "timed out" in text:
        return True
    return any(marker in text for marker in markers)


def run_gh_read(
    *,
    workdir: Path,
    cmd: list[str],
    message: str,
    hint: str | None = None,
    timeout: float = GH_TIMEOUT_SECONDS,
    retry_attempts: int = GH_READ_RETRY_ATTEMPTS,
) -> Result[str, GithubError]:
    attempts = max(1, retry_attempts)
    for attempt in range(attempts):
        result = run_process(cmd, workdir, timeout=timeout)
        if isinstance(result, Ok):
            return result

        error = result.error
        if attempt < attempts - 1 and _is_transient_gh_error(error):
            sleep(GH_READ_RETRY_DELAY_SECONDS * (attempt + 1))
            continue

        return Err(
            GithubError(
                kind="request_failed",
                message=message,
                hint=error.stderr.strip() or hint,
            )
        )

    return Err(GithubError(kind="request_failed", message=message, hint=hint))


def ensure_gh_available() -> Result[None, GithubError]:
    if shutil.which("gh") is None:
        return Err(
            GithubError(
                kind="gh_missing",
                message="gh: missing",
                hint="Install GitHub CLI: https://cli.github.com/",
            )
        )
    return Ok(None)


def ensure_gh_auth(*, workdir: Path) -> Result[None, GithubError]:
    result = run_process(["gh", "auth", "status"], workdir, timeout=GH_TIMEOUT_SECONDS)
    if isinstance(result, Err):
        return Err(
            GithubError(
                kind="gh_auth_required",
                message="gh auth required",
                hint="Run: gh auth login (or export GH_TOKEN)",
            )
        )
    return Ok(None)


def _decode(raw: str, *, endpoint: str) -> Result[object, GithubError]:
    if not raw.strip():
        return Ok(None)
    try:
        obj: object = json.loads(raw)
    except json.JSONDecodeError as e:
        return Err(
            GithubError(
                kind="invalid_payload",
                message=f"gh api returned invalid JSON: {e}",
                hint=endpoint,
            )
        )
    return Ok(obj)


def gh_api_json(*, workdir: Path, endpoint: str) -> Result[object, GithubError]:
    result = run_gh_read(
        workdir=workdir,
        cmd=["gh", "api", endpoint],
        message=f"gh api failed: {endpoint}",
        hint=endpoint,
    )
    if isinstance(result, Err):
        return result
    return _decode(result.value, endpoint=endpoint)


def gh_api_write(
    *,
    workdir: Path,
    method: Literal["POST", "PATCH"],
    endpoint: str,
    fields: Mapping[str, str],
) -> Result[object, GithubError]:
    cmd = ["gh", "api", "--method", method, endpoint]
    for key, value in fields.items():
        cmd += ["-f", f"{key}={value}"]

    result = run_process(cmd, workdir, timeout=GH_TIMEOUT_SECONDS)
    if isinstance(result, Err):
        return Err(
            GithubError(
                kind="request_failed",
                message=f"gh api {method} failed: {endpoint}",
                hint=result.error.stderr.strip() or None,
            )
        )
    return _decode(result.value, endpoint=endpoint)


def get_ref_head_sha(*, workdir: Path, repo: RepoId, ref: str) -> Result[str, GithubError]:
    obj = gh_api_json(workdir=workdir, endpoint=f"repos/{repo.slug}/commits/{ref}")
    if isinstance(obj, Err):
        return obj

    data = as_str_dict(obj.value)
    if data is None:
        return Err(
            GithubError(kind="invalid_payload", message=f"unexpected commit payload: {repo}@{ref}")
        )

    sha = get_str(data, "sha")
    if sha is None or len(sha) != 40:
        return Err(
            GithubError(kind="invalid_payload", message=f"invalid sha in commit payload: {repo}@{ref}")
        )
    return Ok(sha)


def get_commit_date(*, workdir: Path, repo: RepoId, sha: str) -> Result[datetime, GithubError]:
    """Committer date of ``sha``; used for the staleness bound."""
    obj = gh_api_json(workdir=workdir, endpoint=f"repos/{repo.slug}/commits/{sha}")
    if isinstance(obj, Err):
        return obj

    data = as_str_dict(obj.value) or {}
    commit_tbl = get_table(data, "commit") or {}
    committer_tbl = get_table(commit_tbl, "committer") or {}
    date = get_timestamp(committer_tbl, "date")
    if date is None:
        return Err(
            GithubError(kind="invalid_payload", message=f"missing committer date: {repo}@{sha}")
        )
    return Ok(date)


def list_branches(*, workdir: Path, repo: RepoId) -> Result[list[RemoteBranch], GithubError]:
    obj = gh_api_json(workdir=workdir, endpoint=f"repos/{repo.slug}/branches?per_page={_PER_PAGE}")
    if isinstance(obj, Err):
        return obj

    raw = as_obj_list(obj.value)
    if raw is None:
        return Err(GithubError(kind="invalid_payload", message=f"unexpected branches payload: {repo}"))

    out: list[RemoteBranch] = []
    for item in raw:
        d = as_str_dict(item)
        if d is None:
            continue
        name = get_str(d, "name")
        commit_tbl = get_table(d, "commit")
        sha = get_str(commit_tbl, "sha") if commit_tbl is not None else None
        if name is None or sha is None:
            continue
        out.append(RemoteBranch(name=name, sha=sha))
    return Ok(out)


def list_open_pulls(*, workdir: Path, repo: RepoId) -> Result[list[RemotePull], GithubError]:
    obj = gh_api_json(
        workdir=workdir, endpoint=f"repos/{repo.slug}/pulls?state=open&per_page={_PER_PAGE}"
    )
    if isinstance(obj, Err):
        return obj

    raw = as_obj_list(obj.value)
    if raw is None:
        return Err(GithubError(kind="invalid_payload", message=f"unexpected pulls payload: {repo}"))

    out: list[RemotePull] = []
    for item in raw:
        d = as_str_dict(item)
        if d is None:
            continue
        number = get_int(d, "number")
        head_tbl = get_table(d, "head")
        if number is None or head_tbl is None:
            continue
        sha = get_str(head_tbl, "sha")
        if sha is None:
            continue
        out.append(
            RemotePull(number=number, sha=sha)
        )
    return Ok(out)


def find_check_run(
    *, workdir: Path, repo: RepoId, sha: str, name: str
) -> Result[int | None, GithubError]:
    """Id of the existing check run called ``name`` on ``sha``, if any."""
    endpoint = f"repos/{repo.slug}/commits/{sha}/check-runs?check_name={quote(name, safe='')}"
    obj = gh_api_json(workdir=workdir, endpoint=endpoint)
    if isinstance(obj, Err):
        return obj

    data = as_str_dict(obj.value)
    runs = as_obj_list(data.get("check_runs")) if data is not None else None
    if runs is None:
        return Err(GithubError(kind="invalid_payload", message=f"unexpected check-runs payload: {repo}"))

    for run_obj in runs:
        run = as_str_dict(run_obj)
        if run is None or get_str(run, "name") != name:
            continue
        run_id = get_int(run, "id")
        if run_id is not None:
            return Ok(run_id)
    return Ok(None)


def create_check_run(
    *, workdir: Path, repo: RepoId, fields: CheckRunFields
) -> Result[int, GithubError]:
    obj = gh_api_write(
        workdir=workdir,
        method="POST",
        endpoint=f"repos/{repo.slug}/check-runs",
        fields=fields.as_form(),
    )
    if isinstance(obj, Err):
        return obj
    return _check_run_id(obj.value, repo=repo)


def update_check_run(
    *, workdir: Path, repo: RepoId, run_id: int, fields: CheckRunFields
) -> Result[int, GithubError]:
    form = fields.as_form()
    # head_sha is immutable once a check run exists.
    form.pop("head_sha", None)
    obj = gh_api_write(
        workdir=workdir,
        method="PATCH",
        endpoint=f"repos/{repo.slug}/check-runs/{run_id}",
        fields=form,
    )
    if isinstance(obj, Err):
        return obj
    return _check_run_id(obj.value, repo=repo)


def _check_run_id(payload: object, *, repo: RepoId) -> Result[int, GithubError]:
    data = as_str_dict(payload)
    run_id = get_int(data, "id") if data is not None else None
    if run_id is None:
        return Err(GithubError(kind="invalid_payload", message=f"check run without id: {repo}"))
    return Ok(run_id)
