"""Access token storage — one token per approved request."""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Protocol

from rxconsent.access.models import AccessToken

if TYPE_CHECKING:
    import redis

__all__ = ["TokenStoreProtocol", "InMemoryTokenStore", "RedisTokenStore"]


class TokenStoreProtocol(Protocol):
    """Minimal contract for token persistence."""

    def put_if_absent(self, token: AccessToken) -> AccessToken:
        """Store *token* unless its request already has one. Returns the stored token."""
        ...

    def get(self, token: str) -> AccessToken | None:
        ...

    def get_for_request(self, request_id: str) -> AccessToken | None:
        ...

    def mark_consumed(self, token: str) -> bool:
        """Flag the token as released. Returns False if unknown."""
        ...


class InMemoryTokenStore:
    """Token store for dev/test."""

    def __init__(self) -> None:
        self._by_token: dict[str, AccessToken] = {}
        self._by_request: dict[str, str] = {}
        self._lock = threading.Lock()

    def put_if_absent(self, token: AccessToken) -> AccessToken:
        with self._lock:
            existing = self._by_request.get(token.request_id)
            if existing is not None:
                return self._by_token[existing]
            self._by_request[token.request_id] = token.token
            self._by_token[token.token] = token
            return token

    def get(self, token: str) -> AccessToken | None:
        return self._by_token.get(token)

    def get_for_request(self, request_id: str) -> AccessToken | None:
        token = self._by_request.get(request_id)
        return self._by_token.get(token) if token else None

    def mark_consumed(self, token: str) -> bool:
        with self._lock:
            existing = self._by_token.get(token)
            if existing is None:
                return False
            self._by_token[token] = replace(existing, consumed=True)
            return True


class RedisTokenStore:
    """Tokens keyed by request id (SET NX decides the winner) and by token digest."""

    REQUEST_PREFIX = "rxc:token-request:"
    TOKEN_PREFIX = "rxc:token:"

    def __init__(self, client: redis.Redis) -> None:  # type: ignore[type-arg]
        self._redis = client

    def _token_key(self, token: str) -> str:
        return self.TOKEN_PREFIX + hashlib.sha256(token.encode("utf-8")).hexdigest()

    def _ttl(self, token: AccessToken) -> int:
        lifetime = (token.expires_at - token.issued_at).total_seconds()
        return max(int(lifetime), 1)

    def put_if_absent(self, token: AccessToken) -> AccessToken:
        encoded = json.dumps(token.to_dict())
        ttl = self._ttl(token)
        won = self._redis.set(self.REQUEST_PREFIX + token.request_id, encoded, nx=True, ex=ttl)
        if not won:
            existing = self.get_for_request(token.request_id)
            if existing is not None:
                return existing
        self._redis.set(self._token_key(token.token), encoded, ex=ttl)
        return token

    def get(self, token: str) -> AccessToken | None:
        raw = self._redis.get(self._token_key(token))
        return AccessToken.from_dict(json.loads(raw)) if raw else None

    def get_for_request(self, request_id: str) -> AccessToken | None:
        raw = self._redis.get(self.REQUEST_PREFIX + request_id)
        return AccessToken.from_dict(json.loads(raw)) if raw else None

    def mark_consumed(self, token: str) -> bool:
        existing = self.get(token)
        if existing is None:
            return False
        encoded = json.dumps(replace(existing, consumed=True).to_dict())
        pipe = self._redis.pipeline()
        pipe.set(self._token_key(token), encoded, keepttl=True)
        pipe.set(self.REQUEST_PREFIX + existing.request_id, encoded, keepttl=True)
        pipe.execute()
        return True
