"""
Container Herald — Docker Workload Source
═══════════════════════════════════════════════════
Docker SDK integration, read-only:
- List all containers (running or not) as raw workload records
- Fetch the recent log tail of one container, tagged by stream

All calls are blocking; the Poller runs them in worker threads.
"""

import logging
import re
import threading
from typing import Dict, List, Optional, Tuple

import docker
import requests
from docker.errors import DockerException, NotFound

from .errors import SourceUnavailable, WorkloadNotFound
from .models import LogChunk, LogStream

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(rb"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$")


# ── Client ────────────────────────────────────────────────

_client: Optional[docker.DockerClient] = None
_lock = threading.Lock()


def get_client(timeout: int = 60) -> docker.DockerClient:
    """
    Get or create the Docker client (singleton).

    Raises:
        SourceUnavailable: when the daemon cannot be reached
    """
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                try:
                    client = docker.from_env(timeout=timeout)
                    client.ping()
                except (DockerException, requests.exceptions.RequestException) as e:
                    raise SourceUnavailable(f"Docker not available: {e}") from e
                _client = client
                logger.info("[Docker] Client initialized")
    return _client


def reset_client() -> None:
    """Drops the cached client, e.g. after a daemon restart or in tests."""
    global _client
    with _lock:
        _client = None


# ── Log Parsing ───────────────────────────────────────────

def _split_timestamped(raw: bytes, stream: LogStream) -> List[Tuple[bytes, LogChunk]]:
    """
    Split `docker logs --timestamps` output into (timestamp, chunk) pairs.
    The daemon prefixes every line with a fixed-width RFC3339 timestamp.
    """
    entries = []
    prev_ts = b""
    for line in raw.splitlines(keepends=True):
        ts, sep, rest = line.partition(b" ")
        if not sep or not _TIMESTAMP_RE.match(ts):
            # continuation line, sorts with the line before it
            ts, rest = prev_ts, line
        prev_ts = ts
        entries.append((ts, LogChunk(stream=stream, data=rest)))
    return entries


def merge_streams(out: bytes, err: bytes, max_lines: int) -> List[LogChunk]:
    """Interleave stdout/stderr by timestamp and keep the newest `max_lines`."""
    entries = _split_timestamped(out, LogStream.OUT) + _split_timestamped(err, LogStream.ERR)
    entries.sort(key=lambda e: e[0])
    chunks = [chunk for _, chunk in entries]
    if max_lines > 0:
        chunks = chunks[-max_lines:]
    return chunks


# ── Workload Source ───────────────────────────────────────

class DockerWorkloadSource:
    """
    Workload Source backed by the local Docker daemon.
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        """Lazy-Loading Docker Client."""
        if self._client is None:
            self._client = get_client()
        return self._client

    def list_workloads(self) -> List[Dict[str, Optional[str]]]:
        """
        List all containers as raw records.

        Fields may be None for malformed entries; validation happens in
        Workload.from_record.
        """
        try:
            containers = self.client.api.containers(all=True)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise SourceUnavailable(f"Failed to list containers: {e}") from e

        records = []
        for c in containers:
            names = c.get("Names") or []
            records.append({
                "id": c.get("Id"),
                "name": names[0] if names else None,
                "image": c.get("Image"),
                "command": c.get("Command"),
                "status": c.get("Status"),
            })
        logger.debug(f"[Docker] Listed {len(records)} containers")
        return records

    def fetch_log_tail(self, workload_id: str, max_lines: int) -> List[LogChunk]:
        """
        Get the last `max_lines` log lines of a container.

        Raises:
            WorkloadNotFound: container no longer exists
            SourceUnavailable: any other Docker failure
        """
        api = self.client.api
        try:
            attrs = api.inspect_container(workload_id)
            tty = bool((attrs.get("Config") or {}).get("Tty"))

            if tty:
                # With a TTY the daemon cannot separate streams
                raw = api.logs(workload_id, stdout=True, stderr=False,
                               timestamps=True, tail=max_lines)
                chunks = [c for _, c in _split_timestamped(raw, LogStream.CONSOLE)]
            else:
                out = api.logs(workload_id, stdout=True, stderr=False,
                               timestamps=True, tail=max_lines)
                err = api.logs(workload_id, stdout=False, stderr=True,
                               timestamps=True, tail=max_lines)
                chunks = merge_streams(out, err, max_lines)
        except NotFound as e:
            raise WorkloadNotFound(workload_id) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise SourceUnavailable(f"Failed to get logs for {workload_id[:12]}: {e}") from e

        logger.debug(f"[Docker] Got {len(chunks)} log lines for {workload_id[:12]}")
        return chunks
