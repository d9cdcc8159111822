"""Boundary to the external transfer engine and metrics storage.

The orchestrator only talks to the :class:`TransferEngine` protocol. The shipped
implementation drives an rclone daemon through its remote-control HTTP API.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import httpx

from .config import EngineConfig
from .errors import EngineError, ErrorKind

logger = logging.getLogger(__name__)


class EngineJobState(str, Enum):
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(slots=True)
class EngineJobStatus:
    job_id: str
    status: EngineJobState
    transferred: int = 0
    speed: float = 0.0
    percentage: float = 0.0
    eta: float | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status is not EngineJobState.RUNNING

    def as_dict(self) -> dict[str, Any]:
        return {
            "remote_job_id": self.job_id,
            "status": self.status.value,
            "transferred": self.transferred,
            "speed": self.speed,
            "percentage": self.percentage,
            "eta": self.eta,
        }


class TransferEngine(Protocol):
    def list_remotes(self) -> list[str]:  # pragma: no cover - interface
        ...

    def list_files(self, fs: str) -> list[dict[str, Any]]:  # pragma: no cover - interface
        ...

    def start_async_copy(self, src_fs: str, dst_fs: str, config: Mapping[str, Any]) -> str:  # pragma: no cover - interface
        ...

    def get_job_status(self, job_id: str) -> EngineJobStatus:  # pragma: no cover - interface
        ...

    def stop_job(self, job_id: str) -> None:  # pragma: no cover - interface
        ...

    def set_bandwidth_limit(self, rate: str) -> None:  # pragma: no cover - interface
        ...


class MetricsSource(Protocol):
    def get_metrics(self, job_id: str) -> dict[str, Any]:  # pragma: no cover - interface
        ...

    def get_recommendations(self, job_id: str) -> list[dict[str, Any]]:  # pragma: no cover - interface
        ...


_ERROR_MARKERS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMITED, ("ratelimit", "rate limit", "rate_limited", "userratelimitexceeded", "quota", "429")),
    (ErrorKind.CONNECTION_TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ErrorKind.NOT_FOUND, ("not found", "directory not found", "404")),
    (ErrorKind.CONNECTION_REFUSED, ("connection refused",)),
)


def classify_error_text(text: str | None) -> ErrorKind:
    lowered = (text or "").lower()
    for kind, markers in _ERROR_MARKERS:
        if any(marker in lowered for marker in markers):
            return kind
    return ErrorKind.ENGINE_ERROR


_GLOB_SPECIAL = re.compile(r"([\\*?\[\]{}])")


def escape_glob(path: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", path)


def path_filter(paths: Iterable[str]) -> dict[str, list[str]]:
    """rclone ``_filter`` options that restrict a copy to exactly *paths* under the source root."""

    return {
        "IncludeRule": ["/" + escape_glob(path.lstrip("/")) for path in paths],
        "ExcludeRule": ["**"],
    }


def bind_account(fs: str, credential_path: Path | None) -> str:
    """Rewrite ``remote:path`` into a connection string using a service-account file."""

    if credential_path is None or ":" not in fs:
        return fs
    remote, _, path = fs.partition(":")
    return f'{remote},service_account_file="{credential_path}":{path}'


class RcloneClient:
    def __init__(self, config: EngineConfig, *, client: httpx.Client | None = None) -> None:
        self._config = config
        auth = (config.user, config.password) if config.user and config.password else None
        self._client = client or httpx.Client(
            base_url=config.url.rstrip("/"),
            timeout=config.timeout_s,
            auth=auth,
        )

    def __enter__(self) -> "RcloneClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def rpc(self, method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._client.post(f"/{method}", json=dict(params or {}))
        except httpx.TimeoutException as exc:
            logger.error("rclone.timeout method=%s err=%s", method, exc)
            raise EngineError(ErrorKind.CONNECTION_TIMEOUT, f"{method} timed out") from exc
        except httpx.ConnectError as exc:
            logger.error("rclone.connect_error method=%s err=%s", method, exc)
            raise EngineError(ErrorKind.CONNECTION_REFUSED, f"{method}: {exc}") from exc
        except httpx.RequestError as exc:
            logger.error("rclone.request_error method=%s err=%s", method, exc)
            raise EngineError(ErrorKind.ENGINE_ERROR, f"{method}: {exc}") from exc

        if response.status_code == 200:
            return response.json()
        message = _error_message(response)
        logger.error("rclone.bad_status method=%s status=%d body=%s", method, response.status_code, message)
        if response.status_code == 404:
            kind = ErrorKind.NOT_FOUND
        elif response.status_code == 429:
            kind = ErrorKind.RATE_LIMITED
        else:
            kind = classify_error_text(message)
        raise EngineError(kind, f"HTTP {response.status_code}: {message}")

    def list_remotes(self) -> list[str]:
        payload = self.rpc("config/listremotes")
        return [str(remote) for remote in payload.get("remotes") or []]

    def list_files(self, fs: str, path: str = "", *, recursive: bool = True) -> list[dict[str, Any]]:
        payload = self.rpc(
            "operations/list",
            {"fs": fs, "remote": path, "opt": {"recurse": recursive, "noMimeType": True}},
        )
        return list(payload.get("list") or [])

    def start_async_copy(self, src_fs: str, dst_fs: str, config: Mapping[str, Any]) -> str:
        # Only rclone's underscore options are forwarded; lane metadata stays local.
        options = {key: value for key, value in config.items() if key.startswith("_")}
        payload = self.rpc("sync/copy", {"srcFs": src_fs, "dstFs": dst_fs, "_async": True, **options})
        job_id = payload.get("jobid")
        if job_id is None:
            raise EngineError(ErrorKind.ENGINE_ERROR, "sync/copy returned no jobid")
        return str(job_id)

    def get_job_status(self, job_id: str) -> EngineJobStatus:
        status = self.rpc("job/status", {"jobid": int(job_id)})
        stats = self.rpc("core/stats", {"group": f"job/{job_id}"})
        return parse_job_status(job_id, status, stats)

    def stop_job(self, job_id: str) -> None:
        self.rpc("job/stop", {"jobid": int(job_id)})

    def set_bandwidth_limit(self, rate: str) -> None:
        self.rpc("core/bwlimit", {"rate": rate})


def parse_job_status(
    job_id: str,
    status: Mapping[str, Any],
    stats: Mapping[str, Any] | None = None,
) -> EngineJobStatus:
    stats = stats or {}
    if not status.get("finished"):
        state = EngineJobState.RUNNING
    elif status.get("success"):
        state = EngineJobState.FINISHED
    else:
        state = EngineJobState.FAILED
    transferred = int(stats.get("bytes") or 0)
    total = int(stats.get("totalBytes") or 0)
    if state is EngineJobState.FINISHED:
        percentage = 100.0
    else:
        percentage = transferred / total * 100.0 if total else 0.0
    eta = stats.get("eta")
    return EngineJobStatus(
        job_id=str(job_id),
        status=state,
        transferred=transferred,
        speed=float(stats.get("speed") or 0.0),
        percentage=percentage,
        eta=float(eta) if eta is not None else None,
        error=str(status.get("error")) if status.get("error") else None,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text


__all__ = [
    "EngineJobState",
    "EngineJobStatus",
    "MetricsSource",
    "RcloneClient",
    "TransferEngine",
    "bind_account",
    "classify_error_text",
    "escape_glob",
    "parse_job_status",
    "path_filter",
]
