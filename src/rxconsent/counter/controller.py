"""Counter session controller — the state machine the operator's client drives.

One controller per counter terminal. While a request is AWAITING_APPROVAL
a background task polls for the patient's approval and the operator may
type the OTP at the same time. Whatever grants first wins; every async
result is checked against the session generation it was started for, so
a late reply after close or after the session moved on is dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from rxconsent.access.models import Clock, utcnow
from rxconsent.counter.session import (
    TRANSITIONS,
    UNIVERSAL_TRANSITIONS,
    CounterSession,
    SessionNotice,
    SessionStatus,
)
from rxconsent.errors import (
    AccessError,
    AlreadyResolved,
    GatewayUnavailable,
    InvalidOtp,
    InvalidTransition,
    RequestExpired,
    RequestNotFound,
    TooManyAttempts,
    UnknownPatient,
)

if TYPE_CHECKING:
    from rxconsent.counter.gateway import AccessGateway

__all__ = ["CounterSessionController"]

logger = logging.getLogger(__name__)

_PENDING = (SessionStatus.AWAITING_APPROVAL, SessionStatus.VERIFYING)


class CounterSessionController:
    def __init__(
        self,
        gateway: AccessGateway,
        *,
        poll_interval: float = 2.0,
        clock: Clock = utcnow,
    ) -> None:
        self._gateway = gateway
        self._poll_interval = poll_interval
        self._clock = clock
        self._session = CounterSession()
        self._generation = 0
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def session(self) -> CounterSession:
        return self._session

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # -- state machine ------------------------------------------------------

    def _fire(self, trigger: str) -> SessionStatus:
        old = self._session.status
        if trigger in UNIVERSAL_TRANSITIONS:
            new = UNIVERSAL_TRANSITIONS[trigger]
        else:
            allowed = TRANSITIONS.get(old, {})
            if trigger not in allowed:
                msg = f"{trigger!r} not allowed while {old.value} (valid: {sorted(allowed)})"
                raise InvalidTransition(msg)
            new = allowed[trigger]
        self._session.status = new
        logger.info(
            "Counter session: %s --%s--> %s (prn=%s request=%s)",
            old.value,
            trigger,
            new.value,
            self._session.patient_prn,
            self._session.request_id,
        )
        return new

    def _is_current(self, generation: int, *statuses: SessionStatus) -> bool:
        return generation == self._generation and self._session.status in statuses

    def _notify(self, notice: SessionNotice, message: str = "") -> None:
        self._session.last_notice = notice
        self._session.notice_message = message
        logger.info("Counter notice %s: %s", notice.value, message)

    def _clear_notice(self) -> None:
        self._session.last_notice = None
        self._session.notice_message = ""

    def _back_to_idle(self, trigger: str, notice: SessionNotice, message: str) -> None:
        self._fire(trigger)
        self._notify(notice, message)
        self._stop_polling()
        self._session.clear_identifiers()

    # -- operator actions ---------------------------------------------------

    async def submit(self, patient_prn: str) -> CounterSession:
        """Start a lookup for *patient_prn*. Only from IDLE or CLOSED."""
        prn = patient_prn.strip()
        if not prn:
            raise InvalidTransition("PRN is required")
        if self._session.status not in (SessionStatus.IDLE, SessionStatus.CLOSED):
            raise InvalidTransition(
                f"'submit' not allowed while {self._session.status.value}; close the session first"
            )

        self._stop_polling()
        self._generation += 1
        generation = self._generation
        self._session = CounterSession(patient_prn=prn, status=self._session.status)
        self._fire("submit")

        try:
            ticket = await self._gateway.request_access(prn)
        except UnknownPatient as exc:
            if generation == self._generation:
                self._back_to_idle("failed", SessionNotice.UNKNOWN_PATIENT, exc.message)
            return self._session
        except GatewayUnavailable as exc:
            if generation == self._generation:
                self._back_to_idle("failed", SessionNotice.NETWORK_ERROR, exc.message)
            return self._session
        except AccessError as exc:
            if generation == self._generation:
                self._back_to_idle("failed", SessionNotice.REQUEST_FAILED, exc.message)
            return self._session
        except Exception:
            logger.exception("Access request raised for %s", prn)
            if generation == self._generation:
                self._back_to_idle("failed", SessionNotice.REQUEST_FAILED, "Access request failed")
            return self._session

        if not self._is_current(generation, SessionStatus.REQUESTING):
            logger.info("Dropping late request reply %s", ticket.request_id)
            return self._session

        self._session.request_id = ticket.request_id
        self._session.expires_at = ticket.expires_at
        self._fire("created")
        self._poll_task = asyncio.create_task(
            self._poll(generation, ticket.request_id),
            name=f"poll-{ticket.request_id}",
        )
        return self._session

    async def submit_otp(self, otp: str) -> CounterSession:
        """Path B: operator enters the OTP the patient received."""
        self._fire("submit_otp")
        generation = self._generation
        request_id = self._session.request_id

        try:
            token = await asyncio.wait_for(
                self._gateway.verify_otp(request_id, otp.strip()),
                timeout=self._remaining_seconds(),
            )
        except InvalidOtp as exc:
            if self._is_current(generation, SessionStatus.VERIFYING):
                self._fire("otp_invalid")
                self._session.attempts_left = exc.attempts_left
                self._notify(SessionNotice.INVALID_OTP, exc.message)
            return self._session
        except AlreadyResolved:
            # The patient approved first; pick up the token that approval minted.
            await self._claim_existing_grant(generation, request_id)
            return self._session
        except TooManyAttempts as exc:
            if self._is_current(generation, *_PENDING):
                self._back_to_idle("denied", SessionNotice.TOO_MANY_ATTEMPTS, exc.message)
            return self._session
        except (RequestExpired, RequestNotFound, TimeoutError) as exc:
            if self._is_current(generation, *_PENDING):
                message = exc.message if isinstance(exc, AccessError) else "Access request expired"
                self._back_to_idle("expired", SessionNotice.EXPIRED, message)
            return self._session
        except AccessError as exc:
            if self._is_current(generation, SessionStatus.VERIFYING):
                self._fire("otp_invalid")
                self._notify(SessionNotice.NETWORK_ERROR, exc.message)
            return self._session
        except Exception:
            logger.exception("OTP verification raised for %s", request_id)
            if self._is_current(generation, SessionStatus.VERIFYING):
                self._fire("otp_invalid")
                self._notify(SessionNotice.NETWORK_ERROR, "OTP verification failed")
            return self._session

        if not self._is_current(generation, *_PENDING):
            logger.info("Dropping late OTP reply for %s", request_id)
            return self._session
        await self._enter_granted(token)
        return self._session

    async def fetch_prescription(self) -> CounterSession:
        """(Re)load the prescription with the session's token. Failures keep GRANTED."""
        if self._session.status is not SessionStatus.GRANTED:
            raise InvalidTransition("Prescription is only available once access is granted")
        generation = self._generation
        prn, token = self._session.patient_prn, self._session.access_token
        try:
            prescription = await self._gateway.fetch_prescription(prn, token)
        except AccessError as exc:
            if self._is_current(generation, SessionStatus.GRANTED):
                self._notify(SessionNotice.FETCH_FAILED, f"{exc.error_code}: {exc.message}")
            return self._session
        except Exception:
            logger.exception("Prescription fetch raised for %s", prn)
            if self._is_current(generation, SessionStatus.GRANTED):
                self._notify(SessionNotice.FETCH_FAILED, "Prescription fetch failed")
            return self._session
        if self._is_current(generation, SessionStatus.GRANTED):
            self._session.prescription = prescription
            self._clear_notice()
        return self._session

    async def close(self) -> CounterSession:
        """End the session from any state (explicit close or navigating away)."""
        self._stop_polling()
        self._generation += 1
        token = self._session.access_token
        self._fire("close")
        self._session = CounterSession(status=SessionStatus.CLOSED)

        if token:
            try:
                await self._gateway.release(token)
            except Exception:
                logger.warning("Token release failed; it lapses at its expiry", exc_info=True)
        return self._session

    async def wait_for_poll(self) -> None:
        """Block until the background poll has finished (tests, CLI)."""
        if self._poll_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task

    # -- internals ----------------------------------------------------------

    def _remaining_seconds(self) -> float:
        if self._session.expires_at is None:
            return 0.0
        return max((self._session.expires_at - self._clock()).total_seconds(), 0.0)

    def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _poll(self, generation: int, request_id: str) -> None:
        """Path A: poll until granted, denied, or the request TTL runs out."""
        while True:
            await asyncio.sleep(self._poll_interval)
            if not self._is_current(generation, *_PENDING):
                return
            if self._remaining_seconds() <= 0:
                self._back_to_idle("expired", SessionNotice.EXPIRED, "Access request expired")
                return

            try:
                reply = await self._gateway.check_status(request_id)
            except (RequestExpired, RequestNotFound) as exc:
                if self._is_current(generation, *_PENDING):
                    self._back_to_idle("expired", SessionNotice.EXPIRED, exc.message)
                return
            except AccessError as exc:
                logger.warning("Status poll failed for %s (%s); retrying", request_id, exc.error_code)
                if self._is_current(generation, *_PENDING):
                    self._notify(SessionNotice.NETWORK_ERROR, exc.message)
                continue
            except Exception:
                logger.exception("Status poll raised for %s; retrying", request_id)
                if self._is_current(generation, *_PENDING):
                    self._notify(SessionNotice.NETWORK_ERROR, "Status check failed")
                continue

            if not self._is_current(generation, *_PENDING):
                return
            if self._session.last_notice is SessionNotice.NETWORK_ERROR:
                self._clear_notice()
            if reply.granted:
                await self._enter_granted(reply.access_token)
                return
            if reply.state == "denied":
                self._back_to_idle("denied", SessionNotice.DENIED, "Patient denied access")
                return

    async def _claim_existing_grant(self, generation: int, request_id: str) -> None:
        try:
            reply = await self._gateway.check_status(request_id)
        except AccessError as exc:
            if self._is_current(generation, *_PENDING):
                self._back_to_idle("expired", SessionNotice.EXPIRED, exc.message)
            return
        if reply.granted and self._is_current(generation, *_PENDING):
            await self._enter_granted(reply.access_token)

    async def _enter_granted(self, access_token: str) -> None:
        self._fire("granted")
        self._stop_polling()
        self._session.access_token = access_token
        self._clear_notice()
        await self.fetch_prescription()
