"""Consent request storage — protocol + implementations.

The only record written from two channels is the consent request, so every
update is a check-and-set against the snapshot the writer last read.
"""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Protocol

from rxconsent.access.models import ConsentRequest

if TYPE_CHECKING:
    import redis

__all__ = ["RequestStoreProtocol", "InMemoryRequestStore", "RedisRequestStore"]


class RequestStoreProtocol(Protocol):
    """Minimal contract for consent request persistence."""

    def add(self, request: ConsentRequest) -> None:
        """Persist a freshly created request."""
        ...

    def get(self, request_id: str) -> ConsentRequest | None:
        """Return the current snapshot, or None if unknown."""
        ...

    def compare_and_set(
        self,
        expected: ConsentRequest,
        updated: ConsentRequest,
    ) -> bool:
        """Replace *expected* with *updated* only if nobody changed it meanwhile."""
        ...


def _encode(request: ConsentRequest) -> str:
    return json.dumps(request.to_dict(), sort_keys=True, separators=(",", ":"))


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryRequestStore:
    """Dict-backed store; a lock serializes check-and-set across threads."""

    def __init__(self) -> None:
        self._requests: dict[str, ConsentRequest] = {}
        self._lock = threading.Lock()

    def add(self, request: ConsentRequest) -> None:
        with self._lock:
            if request.request_id in self._requests:
                msg = f"Duplicate request_id {request.request_id}"
                raise ValueError(msg)
            self._requests[request.request_id] = request

    def get(self, request_id: str) -> ConsentRequest | None:
        return self._requests.get(request_id)

    def compare_and_set(self, expected: ConsentRequest, updated: ConsentRequest) -> bool:
        with self._lock:
            if self._requests.get(expected.request_id) != expected:
                return False
            self._requests[expected.request_id] = updated
            return True


# ── Redis implementation ─────────────────────────────────

# Swap the stored JSON only if it is byte-identical to what the writer read.
_CAS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
    return 1
end
return 0
"""


class RedisRequestStore:
    """Requests as JSON strings; check-and-set runs server-side in a Lua script."""

    KEY_PREFIX = "rxc:request:"

    def __init__(
        self,
        client: redis.Redis,  # type: ignore[type-arg]
        retention_seconds: int = 86400,
    ) -> None:
        self._redis = client
        self._retention = retention_seconds
        self._cas = client.register_script(_CAS_SCRIPT)

    def _key(self, request_id: str) -> str:
        return f"{self.KEY_PREFIX}{request_id}"

    def add(self, request: ConsentRequest) -> None:
        created = self._redis.set(
            self._key(request.request_id),
            _encode(request),
            nx=True,
            ex=self._retention,
        )
        if not created:
            msg = f"Duplicate request_id {request.request_id}"
            raise ValueError(msg)

    def get(self, request_id: str) -> ConsentRequest | None:
        raw = self._redis.get(self._key(request_id))
        if raw is None:
            return None
        return ConsentRequest.from_dict(json.loads(raw))

    def compare_and_set(self, expected: ConsentRequest, updated: ConsentRequest) -> bool:
        result = self._cas(
            keys=[self._key(expected.request_id)],
            args=[_encode(expected), _encode(updated)],
        )
        return bool(result)
