"""
Incident Session -- state container for one escalation.

A session owns one ``Incident``, its ranked candidate list, its
``AttemptLog`` and its terminal outcome.  The lifecycle is a tiny state
machine:

    NONE_YET -> ACCEPTED(facility)
    NONE_YET -> EXHAUSTED

Both target states are terminal.  A session leaves ``NONE_YET`` exactly
once; any further transition raises ``InvalidTransitionError``.  Attempt
records may still be appended after the outcome is fixed (late answers from
abandoned attempts are kept for the audit trail) but can no longer change
it.

``SessionStore`` keeps sessions addressable by id for boundary queries and
forgets terminal ones ``retention_seconds`` after they finish.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pulseresq.audit import AttemptLog
from pulseresq.errors import InvalidTransitionError, SessionNotFoundError
from pulseresq.models import (
    AttemptOutcome,
    AttemptRecord,
    ChannelKind,
    EscalationOutcome,
    Facility,
    Incident,
    OutcomeStatus,
    RankedCandidate,
    SessionStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.NONE_YET: {SessionStatus.ACCEPTED, SessionStatus.EXHAUSTED},
    SessionStatus.ACCEPTED: set(),  # terminal state
    SessionStatus.EXHAUSTED: set(),  # terminal state
}


# ---------------------------------------------------------------------------
# Escalation session
# ---------------------------------------------------------------------------

class EscalationSession:
    """Tracks the lifecycle and attempt log of a single escalation."""

    def __init__(
        self,
        incident: Incident,
        candidates: list[RankedCandidate],
        session_id: Optional[str] = None,
        attempt_log_path: Optional[Path] = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.incident = incident
        self.candidates: tuple[RankedCandidate, ...] = tuple(candidates)
        self.attempt_log = AttemptLog(self.session_id, sink_path=attempt_log_path)
        self.status = SessionStatus.NONE_YET
        self.accepted_candidate: Optional[RankedCandidate] = None
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.batches_started = 0
        self._on_finish: Optional[Callable[[EscalationSession], None]] = None

    # -- state --

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.NONE_YET

    @property
    def accepted_facility(self) -> Optional[Facility]:
        return self.accepted_candidate.facility if self.accepted_candidate else None

    def _transition(self, target: SessionStatus) -> None:
        allowed = _VALID_TRANSITIONS.get(self.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Session {self.session_id} cannot transition from "
                f"{self.status.value} to {target.value}."
            )
        self.status = target
        self.finished_at = datetime.now(timezone.utc)
        if self._on_finish is not None:
            self._on_finish(self)

    def mark_accepted(self, candidate: RankedCandidate) -> None:
        """Fix the outcome to ACCEPTED(candidate).

        Raises:
            InvalidTransitionError: If the session is already terminal.
        """
        self._transition(SessionStatus.ACCEPTED)
        self.accepted_candidate = candidate
        logger.info(
            "Session %s accepted by %s (%s)",
            self.session_id,
            candidate.facility.name,
            candidate.facility_id,
            extra={"session_id": self.session_id, "facility_id": candidate.facility_id},
        )

    def watch(self, callback: Callable[["EscalationSession"], None]) -> None:
        """Call ``callback(session)`` once, when the outcome is fixed."""
        self._on_finish = callback

    def mark_exhausted(self) -> None:
        """Fix the outcome to EXHAUSTED.

        Raises:
            InvalidTransitionError: If the session is already terminal.
        """
        self._transition(SessionStatus.EXHAUSTED)
        logger.info(
            "Session %s exhausted %d candidates without acceptance",
            self.session_id,
            len(self.candidates),
            extra={"session_id": self.session_id},
        )

    # -- attempts --

    def record_attempt(
        self,
        facility_id: str,
        channel: Optional[ChannelKind],
        outcome: AttemptOutcome,
        detail: str = "",
        batch_index: int = 0,
    ) -> AttemptRecord:
        """Append an attempt record.  Allowed after the outcome is fixed."""
        return self.attempt_log.record(
            facility_id, channel, outcome, detail=detail, batch_index=batch_index
        )

    def attempts(self) -> list[AttemptRecord]:
        return list(self.attempt_log.records())

    def outcome(self) -> Optional[EscalationOutcome]:
        """Boundary view of the terminal outcome, or None while still running."""
        if self.status == SessionStatus.ACCEPTED:
            return EscalationOutcome(
                session_id=self.session_id,
                status=OutcomeStatus.ACCEPTED,
                facility=self.accepted_facility,
                attempts=self.attempt_log.records(),
            )
        if self.status == SessionStatus.EXHAUSTED:
            return EscalationOutcome(
                session_id=self.session_id,
                status=OutcomeStatus.EXHAUSTED,
                attempts=self.attempt_log.records(),
            )
        return None

    def __repr__(self) -> str:
        return (
            f"EscalationSession(id={self.session_id}, status={self.status.value}, "
            f"candidates={len(self.candidates)}, attempts={len(self.attempt_log)})"
        )


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

class SessionStore:
    """In-memory registry of sessions, keyed by ``session_id``.

    Terminal sessions are retained for ``retention_seconds`` after they
    finish so the boundary can still answer queries about them, then dropped
    on the next ``create``/``get``.  Running sessions are never expired; an
    escalation whose task is cancelled finishes as EXHAUSTED, so none is
    left running forever.
    """

    def __init__(
        self,
        retention_seconds: float = 3600.0,
        attempt_log_path: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention_seconds
        self._attempt_log_path = attempt_log_path
        self._clock = clock
        self._sessions: dict[str, EscalationSession] = {}
        self._finished_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def create(
        self,
        incident: Incident,
        candidates: list[RankedCandidate],
    ) -> EscalationSession:
        session = EscalationSession(
            incident, candidates, attempt_log_path=self._attempt_log_path
        )
        session.watch(self._note_finished)
        with self._lock:
            self._purge_expired()
            self._sessions[session.session_id] = session
        return session

    def _note_finished(self, session: EscalationSession) -> None:
        with self._lock:
            self._finished_at[session.session_id] = self._clock()

    def get(self, session_id: str) -> EscalationSession:
        """Look up a session.

        Raises:
            SessionNotFoundError: If the id is unknown or has expired.
        """
        with self._lock:
            self._purge_expired()
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No session with id '{session_id}'")
        return session

    def _purge_expired(self) -> None:
        now = self._clock()
        for session_id, session in list(self._sessions.items()):
            if not session.is_terminal:
                continue
            finished = self._finished_at.setdefault(session_id, now)
            if now - finished > self._retention:
                del self._sessions[session_id]
                del self._finished_at[session_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
