"""Threshold signing sessions.

A session collects partial signatures from the parties holding shares of a
key until ``threshold`` distinct partials have arrived, then aggregates them.

States:
    pending     session created, no partials
    collecting  at least one, fewer than threshold partials
    complete    threshold reached, aggregate signature available (terminal)
    failed      timeout or non-recoverable party error (terminal)

Transitions are pure functions of (session, event) returning a new record.
The store applies them under a lock so that a partial racing a timeout
resolves to whichever transition is applied first; the other is rejected
with SessionTerminalError.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable

from policykms.core.errors import (
    InvalidPartyError,
    KMSError,
    SessionNotFoundError,
    SessionTerminalError,
)
from policykms.core.logging import get_logger, session_context

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.FAILED)


@dataclass(frozen=True)
class SigningSession:
    """Immutable snapshot of a threshold signing session."""
    session_id: str
    key_id: str
    message: str  # hex digest being signed
    threshold: int
    total_parties: int
    created_at: float
    expires_at: float
    partials: dict[int, str] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.PENDING
    signature: str | None = None
    error: str | None = None
    finished_at: float | None = None

    @property
    def collected(self) -> int:
        return len(self.partials)

    @property
    def threshold_reached(self) -> bool:
        return self.collected >= self.threshold

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "key_id": self.key_id,
            "message": self.message,
            "threshold": self.threshold,
            "total_parties": self.total_parties,
            "collected": self.collected,
            "status": self.status.value,
            "signature": self.signature,
            "error": self.error,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


def new_session(
    key_id: str,
    message: str,
    threshold: int,
    total_parties: int,
    ttl_seconds: float,
    now: float | None = None,
    session_id: str | None = None,
) -> SigningSession:
    """Create a pending session."""
    if threshold < 1:
        raise KMSError("Threshold must be at least 1")
    if total_parties < threshold:
        raise KMSError(f"Total parties ({total_parties}) must be >= threshold ({threshold})")
    now = time.time() if now is None else now
    return SigningSession(
        session_id=session_id or f"sess_{secrets.token_hex(8)}",
        key_id=key_id,
        message=message,
        threshold=threshold,
        total_parties=total_parties,
        created_at=now,
        expires_at=now + ttl_seconds,
    )


def _guard(session: SigningSession) -> None:
    if session.status.is_terminal:
        raise SessionTerminalError(session.session_id, session.status.value)


def apply_partial(session: SigningSession, party_id: int, partial: str) -> SigningSession:
    """Record a partial signature.

    A repeated partial from the same party is ignored, as is any partial
    arriving once the threshold is reached. Reaching the threshold leaves the
    session in ``collecting`` until apply_completion runs.
    """
    _guard(session)
    if not 1 <= party_id <= session.total_parties:
        raise InvalidPartyError(
            f"Party {party_id} is not part of session {session.session_id} "
            f"(parties 1..{session.total_parties})"
        )
    if party_id in session.partials or session.threshold_reached:
        return session
    partials = {**session.partials, party_id: partial}
    return replace(session, partials=partials, status=SessionStatus.COLLECTING)


def apply_completion(session: SigningSession, signature: str, now: float | None = None) -> SigningSession:
    _guard(session)
    if not session.threshold_reached:
        raise KMSError(
            f"Session {session.session_id} has {session.collected}/{session.threshold} partials"
        )
    return replace(
        session,
        status=SessionStatus.COMPLETE,
        signature=signature,
        finished_at=time.time() if now is None else now,
    )


def apply_failure(session: SigningSession, reason: str, now: float | None = None) -> SigningSession:
    _guard(session)
    return replace(
        session,
        status=SessionStatus.FAILED,
        error=reason,
        finished_at=time.time() if now is None else now,
    )


Aggregator = Callable[[SigningSession], Awaitable[str]]


class SigningSessionStore:
    """Bounded, time-evicted map of signing sessions keyed by session id.

    Args:
        aggregator: Combines threshold partials into the final signature
        max_sessions: Upper bound on stored sessions
        retention_seconds: How long terminal sessions stay readable
        clock: Time source (tests)
    """

    def __init__(
        self,
        aggregator: Aggregator,
        max_sessions: int = 1024,
        retention_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        self._aggregator = aggregator
        self._sessions: dict[str, SigningSession] = {}
        self._waiters: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self.max_sessions = max_sessions
        self.retention_seconds = retention_seconds
        self.clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> SigningSession | None:
        return self._sessions.get(session_id)

    def pending(self) -> list[SigningSession]:
        """Non-terminal sessions that have not passed their deadline."""
        now = self.clock()
        return [
            s for s in self._sessions.values()
            if not s.status.is_terminal and now < s.expires_at
        ]

    def active_for_key(self, key_id: str) -> list[SigningSession]:
        """Pending sessions that use ``key_id``."""
        return [s for s in self.pending() if s.key_id == key_id]

    async def create(
        self,
        key_id: str,
        message: str,
        threshold: int,
        total_parties: int,
        ttl_seconds: float,
    ) -> SigningSession:
        async with self._lock:
            now = self.clock()
            self._expire_locked(now)
            self._evict_locked(now)
            if len(self._sessions) >= self.max_sessions:
                raise KMSError(f"Too many active signing sessions (max {self.max_sessions})")

            session = new_session(key_id, message, threshold, total_parties, ttl_seconds, now=now)
            self._sessions[session.session_id] = session
            self._waiters[session.session_id] = asyncio.Event()

        with session_context(session.session_id):
            logger.info(
                "Signing session created",
                key_id=key_id,
                threshold=threshold,
                total_parties=total_parties,
            )
        return session

    async def add_partial(self, session_id: str, party_id: int, partial: str) -> SigningSession:
        """Add a partial; aggregates and completes the session at threshold.

        The aggregator runs outside the store lock. A timeout or failure
        applied while it runs wins, and the late signature is dropped.
        """
        async with self._lock:
            session = self._require(session_id)
            if self.clock() >= session.expires_at and not session.status.is_terminal:
                self._transition(session, apply_failure(session, "timeout", now=self.clock()))
                raise SessionTerminalError(session_id, SessionStatus.FAILED.value)

            updated = apply_partial(session, party_id, partial)
            if updated is session:
                logger.debug("Partial ignored", session_id=session_id, party_id=party_id)
                return session
            self._transition(session, updated)
            if not updated.threshold_reached:
                return updated

        try:
            signature = await self._aggregator(updated)
        except Exception as e:
            reason = f"aggregation failed: {e}"
            return await self._settle(updated, lambda s: apply_failure(s, reason, now=self.clock()))
        return await self._settle(updated, lambda s: apply_completion(s, signature, now=self.clock()))

    async def _settle(self, aggregated: SigningSession, outcome) -> SigningSession:
        async with self._lock:
            current = self._sessions.get(aggregated.session_id)
            if current is None or current.status.is_terminal:
                logger.warning(
                    "Aggregation result dropped",
                    session_id=aggregated.session_id,
                    status=current.status.value if current else "evicted",
                )
                return current or aggregated
            settled = outcome(current)
            self._transition(current, settled)
            return settled

    async def fail(self, session_id: str, reason: str) -> SigningSession:
        """Mark a session failed (party error or cancellation)."""
        async with self._lock:
            session = self._require(session_id)
            failed = apply_failure(session, reason, now=self.clock())
            self._transition(session, failed)
            return failed

    async def expire(self) -> list[SigningSession]:
        """Fail every non-terminal session past its deadline."""
        async with self._lock:
            return self._expire_locked(self.clock())

    async def wait(self, session_id: str, timeout: float) -> SigningSession:
        """Wait until the session is terminal or ``timeout`` elapses."""
        event = self._waiters.get(session_id)
        if event is None:
            raise SessionNotFoundError(f"Signing session {session_id} not found")
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._require(session_id)

    def _require(self, session_id: str) -> SigningSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Signing session {session_id} not found")
        return session

    def _transition(self, before: SigningSession, after: SigningSession) -> None:
        self._sessions[after.session_id] = after
        if before.status != after.status:
            with session_context(after.session_id):
                logger.info(
                    "Signing session transition",
                    key_id=after.key_id,
                    from_status=before.status.value,
                    to_status=after.status.value,
                    collected=after.collected,
                    threshold=after.threshold,
                    error=after.error,
                )
        if after.status.is_terminal:
            event = self._waiters.get(after.session_id)
            if event is not None:
                event.set()

    def _expire_locked(self, now: float) -> list[SigningSession]:
        expired = []
        for session in list(self._sessions.values()):
            if not session.status.is_terminal and now >= session.expires_at:
                failed = apply_failure(session, "timeout", now=now)
                self._transition(session, failed)
                expired.append(failed)
        return expired

    def _evict_locked(self, now: float) -> None:
        for session_id, session in list(self._sessions.items()):
            if session.status.is_terminal and session.finished_at is not None:
                if now - session.finished_at >= self.retention_seconds:
                    del self._sessions[session_id]
                    self._waiters.pop(session_id, None)

        # Still full: drop the oldest terminal sessions first
        if len(self._sessions) >= self.max_sessions:
            terminal = sorted(
                (s for s in self._sessions.values() if s.status.is_terminal),
                key=lambda s: s.finished_at or s.created_at,
            )
            for session in terminal[: len(self._sessions) - self.max_sessions + 1]:
                del self._sessions[session.session_id]
                self._waiters.pop(session.session_id, None)
