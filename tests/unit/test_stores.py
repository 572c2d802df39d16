"""Tests for request and token stores (in-memory + Redis with a mocked client)."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from rxconsent.access.models import AccessToken, ConsentRequest, RequestState
from rxconsent.storage.request_store import InMemoryRequestStore, RedisRequestStore
from rxconsent.storage.token_store import InMemoryTokenStore, RedisTokenStore

NOW = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)


def _request(request_id: str = "REQ-1") -> ConsentRequest:
    return ConsentRequest(
        request_id=request_id,
        patient_prn="PRN-1001",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=5),
        otp_hash="ab" * 32,
    )


def _token(request_id: str = "REQ-1", token: str = "tok-1") -> AccessToken:
    return AccessToken(
        token=token,
        patient_prn="PRN-1001",
        request_id=request_id,
        issued_at=datetime.now(UTC),
        expires_at=datetime.now(UTC) + timedelta(minutes=10),
    )


class TestConsentRequestSerialisation:
    def test_dict_round_trip_keeps_enums_and_datetimes(self) -> None:
        original = replace(_request(), state=RequestState.DENIED, otp_attempts=5)
        restored = ConsentRequest.from_dict(json.loads(json.dumps(original.to_dict())))
        assert restored == original


class TestInMemoryRequestStore:
    def setup_method(self) -> None:
        self.store = InMemoryRequestStore()

    def test_add_and_get(self) -> None:
        self.store.add(_request())
        assert self.store.get("REQ-1") == _request()
        assert self.store.get("REQ-2") is None

    def test_duplicate_id_rejected(self) -> None:
        self.store.add(_request())
        with pytest.raises(ValueError, match="Duplicate"):
            self.store.add(_request())

    def test_compare_and_set(self) -> None:
        original = _request()
        self.store.add(original)
        approved = replace(original, state=RequestState.APPROVED)
        assert self.store.compare_and_set(original, approved)
        assert not self.store.compare_and_set(original, replace(original, state=RequestState.DENIED))
        assert self.store.get("REQ-1") == approved

    def test_compare_and_set_unknown(self) -> None:
        assert not self.store.compare_and_set(_request(), _request())


class TestRedisRequestStore:
    def setup_method(self) -> None:
        self.redis = MagicMock()
        self.script = MagicMock()
        self.redis.register_script.return_value = self.script
        self.store = RedisRequestStore(self.redis, retention_seconds=3600)

    def test_add_uses_set_nx(self) -> None:
        self.redis.set.return_value = True
        self.store.add(_request())
        args, kwargs = self.redis.set.call_args
        assert args[0] == "rxc:request:REQ-1"
        assert kwargs == {"nx": True, "ex": 3600}

    def test_add_duplicate(self) -> None:
        self.redis.set.return_value = None
        with pytest.raises(ValueError, match="Duplicate"):
            self.store.add(_request())

    def test_get_decodes(self) -> None:
        self.redis.get.return_value = json.dumps(_request().to_dict())
        assert self.store.get("REQ-1") == _request()

    def test_get_missing(self) -> None:
        self.redis.get.return_value = None
        assert self.store.get("REQ-1") is None

    def test_compare_and_set_runs_script_with_both_snapshots(self) -> None:
        self.script.return_value = 1
        original = _request()
        updated = replace(original, state=RequestState.APPROVED)
        assert self.store.compare_and_set(original, updated) is True

        kwargs = self.script.call_args.kwargs
        assert kwargs["keys"] == ["rxc:request:REQ-1"]
        expected_raw, updated_raw = kwargs["args"]
        assert json.loads(expected_raw)["state"] == "pending"
        assert json.loads(updated_raw)["state"] == "approved"

    def test_compare_and_set_lost(self) -> None:
        self.script.return_value = 0
        assert self.store.compare_and_set(_request(), _request()) is False


class TestInMemoryTokenStore:
    def setup_method(self) -> None:
        self.store = InMemoryTokenStore()

    def test_first_token_per_request_wins(self) -> None:
        first = self.store.put_if_absent(_token(token="tok-1"))
        second = self.store.put_if_absent(_token(token="tok-2"))
        assert first.token == second.token == "tok-1"
        assert self.store.get("tok-2") is None

    def test_lookup_by_request(self) -> None:
        self.store.put_if_absent(_token())
        token = self.store.get_for_request("REQ-1")
        assert token is not None and token.token == "tok-1"
        assert self.store.get_for_request("REQ-9") is None

    def test_mark_consumed(self) -> None:
        self.store.put_if_absent(_token())
        assert self.store.mark_consumed("tok-1")
        token = self.store.get("tok-1")
        assert token is not None and token.consumed
        assert not self.store.mark_consumed("tok-x")


class TestRedisTokenStore:
    def setup_method(self) -> None:
        self.redis = MagicMock()
        self.store = RedisTokenStore(self.redis)

    def test_winner_writes_both_keys(self) -> None:
        self.redis.set.return_value = True
        stored = self.store.put_if_absent(_token())
        assert stored.token == "tok-1"
        keys = [c.args[0] for c in self.redis.set.call_args_list]
        assert keys[0] == "rxc:token-request:REQ-1"
        assert keys[1].startswith("rxc:token:")
        assert "tok-1" not in keys[1]
        assert self.redis.set.call_args_list[0].kwargs["nx"] is True

    def test_key_expiry_follows_token_lifetime_not_wall_clock(self) -> None:
        self.redis.set.return_value = True
        minted = AccessToken(
            token="tok-1",
            patient_prn="PRN-1001",
            request_id="REQ-1",
            issued_at=NOW,
            expires_at=NOW + timedelta(minutes=10),
        )
        self.store.put_if_absent(minted)
        assert [c.kwargs["ex"] for c in self.redis.set.call_args_list] == [600, 600]

    def test_loser_returns_existing(self) -> None:
        self.redis.set.return_value = None
        self.redis.get.return_value = json.dumps(_token(token="tok-winner").to_dict())
        stored = self.store.put_if_absent(_token(token="tok-loser"))
        assert stored.token == "tok-winner"
        assert self.redis.set.call_count == 1

    def test_mark_consumed_rewrites_both_keys(self) -> None:
        self.redis.get.return_value = json.dumps(_token().to_dict())
        pipe = MagicMock()
        self.redis.pipeline.return_value = pipe
        assert self.store.mark_consumed("tok-1")
        assert pipe.set.call_count == 2
        assert json.loads(pipe.set.call_args_list[0].args[1])["consumed"] is True
        pipe.execute.assert_called_once()

    def test_mark_consumed_unknown(self) -> None:
        self.redis.get.return_value = None
        assert not self.store.mark_consumed("tok-1")
