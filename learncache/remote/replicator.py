from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import asyncio
import logging
import time
from typing import Callable, TYPE_CHECKING

import httpx

from ..cache.errors import ReplicationFailed

if TYPE_CHECKING:
    from ..cache.models import CacheEntry
    from .objectstore import RemoteObjectStore

logger = logging.getLogger("learncache.remote")


@dataclass
class _CircuitState:
    failures: deque[float] = field(default_factory=deque)
    open_until: float = 0.0


class Replicator:
    """Pushes local entries to the remote store, one bounded attempt per call.

    Repeated transient failures open a circuit so a store that is down is not
    hit by every background upload; while it is open those pushes fail fast.
    """

    def __init__(
        self,
        object_store: RemoteObjectStore,
        *,
        key_prefix: str = "",
        timeout_seconds: float = 30.0,
        failure_threshold: int = 3,
        failure_window_seconds: int = 300,
        cooldown_seconds: int = 300,
        now_fn: Callable[[], float] | None = None,
    ):
        self._store: RemoteObjectStore = object_store
        self._key_prefix: str = key_prefix
        self._timeout_seconds: float = timeout_seconds
        self._failure_threshold: int = failure_threshold
        self._failure_window_seconds: int = failure_window_seconds
        self._cooldown_seconds: int = cooldown_seconds
        self._now_fn: Callable[[], float] = now_fn or time.monotonic
        self._circuit = _CircuitState()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @property
    def object_store(self) -> RemoteObjectStore:
        return self._store

    @property
    def circuit_open(self) -> bool:
        return self._is_circuit_open()

    def object_key(self, entry: CacheEntry) -> str:
        return f"{self._key_prefix}{entry.id}{entry.extension}"

    async def push(self, entry: CacheEntry, data: bytes, *, bypass_circuit: bool = False) -> str:
        """Upload ``data`` for ``entry`` and return its remote URL.

        ``bypass_circuit`` is for explicit operator retries: the attempt is
        made even while the circuit is open, and its outcome still updates
        the failure history.
        """
        if not bypass_circuit and self._is_circuit_open():
            logger.info("replicate.skip id=%s reason=circuit-open", entry.id)
            raise ReplicationFailed(entry.id, "remote store circuit open")

        key = self.object_key(entry)
        logger.info("replicate.try id=%s key=%s size=%d", entry.id, key, len(data))
        try:
            url = await asyncio.wait_for(
                self._store.put_object(key, data, entry.mime_type or "application/octet-stream"),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            reason = f"timed out after {self._timeout_seconds}s"
            logger.warning("replicate.fail id=%s status=None error=%s", entry.id, reason)
            self._record_failure()
            raise ReplicationFailed(entry.id, reason) from exc
        except Exception as exc:
            status_code = self._extract_status_code(exc)
            logger.warning(
                "replicate.fail id=%s status=%s error=%s",
                entry.id,
                status_code,
                exc,
            )
            if self._count_failure(status_code, exc):
                self._record_failure()
            raise ReplicationFailed(entry.id, str(exc)) from exc

        self._clear_failures()
        logger.info("replicate.success id=%s url=%s", entry.id, url)
        return url

    def _extract_status_code(self, exc: Exception) -> int | None:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code
        status_code = getattr(exc, "status_code", None)
        return status_code if isinstance(status_code, int) else None

    def _count_failure(self, status_code: int | None, exc: Exception) -> bool:
        if status_code is not None:
            return status_code == 429 or status_code >= 500
        return isinstance(exc, (httpx.TransportError, OSError))

    def _record_failure(self) -> None:
        now = self._now_fn()
        state = self._circuit
        self._prune_old_failures(state, now)
        state.failures.append(now)
        if len(state.failures) >= self._failure_threshold:
            state.open_until = now + self._cooldown_seconds
            logger.warning(
                "replicate.circuit-open failures=%d window=%ds cooldown=%ds",
                len(state.failures),
                self._failure_window_seconds,
                self._cooldown_seconds,
            )

    def _clear_failures(self) -> None:
        self._circuit.failures.clear()
        self._circuit.open_until = 0.0

    def _is_circuit_open(self) -> bool:
        state = self._circuit
        now = self._now_fn()
        self._prune_old_failures(state, now)
        if state.open_until > now:
            return True
        if state.open_until:
            state.open_until = 0.0
        return False

    def _prune_old_failures(self, state: _CircuitState, now: float) -> None:
        cutoff = now - self._failure_window_seconds
        while state.failures and state.failures[0] < cutoff:
            _ = state.failures.popleft()
