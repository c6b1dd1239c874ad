"""
Escalation Dispatcher -- batch-by-batch notification until one facility accepts.

**Algorithm:**

1. Partition the ranked candidates into consecutive batches of
   ``batch_size``, closest batch first.
2. For each batch, in order:

   a. Start one asyncio task per facility.  Each task walks the facility's
      usable channels in ``channel_order`` priority, one at a time.  Every
      attempt runs under its own ``per_channel_timeout`` and is appended to
      the session's attempt log whatever its outcome.  A decline, error or
      timeout falls through to the next channel; an acceptance stops the
      walk.
   b. Wait until some facility accepts, ``acceptance_window`` elapses, or
      every task has finished -- whichever comes first.
   c. On acceptance, cancel every other in-flight attempt and fix the
      session outcome to ACCEPTED(winner).
   d. Otherwise abandon any stragglers and move on to the next batch.

3. If no batch yields an acceptance the outcome is EXHAUSTED.

**Concurrency:**  batches never overlap.  Within a batch at most
``batch_size`` facility tasks run, each with a single attempt in flight.
The dispatcher holds no lock across an ``await``; attempt records are
appended synchronously between awaits.

**First acceptance wins:**  if two facilities in the same batch accept
before the dispatcher wakes up, the earlier completion wins and an exact
tie goes to the better-ranked facility.  The other acceptance stays in the
attempt log but does not change the outcome.

**Failure containment:**  nothing an adapter does can fail the session.
Timeouts become ``no-response`` records; exceptions become ``error``
records.  If the task running ``escalate`` is itself cancelled, the batch
in flight is abandoned and the session is closed as EXHAUSTED before the
cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from pulseresq.channels import ChannelAdapter, ChannelResult
from pulseresq.config import DispatchConfig
from pulseresq.errors import ChannelFailure, InputError, InvalidTransitionError
from pulseresq.models import (
    AttemptOutcome,
    ChannelKind,
    EscalationOutcome,
    Facility,
    Incident,
    RankedCandidate,
)
from pulseresq.session import EscalationSession

logger = logging.getLogger(__name__)

NO_COMM_PATH = "no-comm-path"


def partition_batches(
    candidates: list[RankedCandidate],
    batch_size: int,
) -> list[list[RankedCandidate]]:
    """Split candidates into consecutive batches, preserving order.

    Produces ``ceil(n / batch_size)`` batches, each of ``batch_size``
    except possibly the last.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [
        list(candidates[i:i + batch_size])
        for i in range(0, len(candidates), batch_size)
    ]


def check_escalation_inputs(
    ranked_candidates: list[RankedCandidate],
    incident: Incident,
) -> None:
    """Reject bad input before any session or task is created.

    Raises:
        InputError: If the incident is missing or candidates repeat a
            facility id.
    """
    if not isinstance(incident, Incident):
        raise InputError("An Incident is required to start an escalation.")
    ids = [c.facility_id for c in ranked_candidates]
    if len(ids) != len(set(ids)):
        raise InputError("Ranked candidates contain duplicate facility ids.")


class _Acceptance:
    """An accepted attempt observed during a batch."""

    __slots__ = ("completed_at", "candidate")

    def __init__(self, completed_at: float, candidate: RankedCandidate) -> None:
        self.completed_at = completed_at
        self.candidate = candidate

    @property
    def sort_key(self) -> tuple[float, int]:
        return (self.completed_at, self.candidate.rank)


class EscalationDispatcher:
    """Drives one escalation across batches of ranked candidates.

    Args:
        adapters: Channel adapters, keyed by kind or as an iterable of
            adapters (each exposing ``kind``).
        config: Default dispatch configuration; ``escalate`` can override
            it per call.
    """

    def __init__(
        self,
        adapters: dict[ChannelKind, ChannelAdapter] | Iterable[ChannelAdapter],
        config: DispatchConfig | None = None,
    ) -> None:
        if isinstance(adapters, dict):
            self._adapters = dict(adapters)
        else:
            self._adapters = {adapter.kind: adapter for adapter in adapters}
        self._config = config or DispatchConfig()

    @property
    def config(self) -> DispatchConfig:
        return self._config

    def usable_channels(
        self, facility: Facility, config: DispatchConfig
    ) -> list[ChannelKind]:
        """Channels with both an address on the facility and an adapter here."""
        return [
            kind
            for kind in facility.channels.available(config.channel_order)
            if kind in self._adapters
        ]

    async def escalate(
        self,
        ranked_candidates: list[RankedCandidate],
        incident: Incident,
        config: DispatchConfig | None = None,
        session: Optional[EscalationSession] = None,
    ) -> EscalationOutcome:
        """Run the escalation to a terminal outcome.

        Args:
            ranked_candidates: Output of ``ranking.rank``; closest first.
            incident: The incident being escalated.
            config: Per-call override of the dispatch configuration.
            session: Session to record into.  A fresh one is created when
                omitted.

        Returns:
            The session's terminal ``EscalationOutcome``.

        Raises:
            InputError: If the incident is missing or candidates repeat a
                facility id.
            InvalidTransitionError: If ``session`` is already terminal.
        """
        check_escalation_inputs(ranked_candidates, incident)

        config = config or self._config
        if session is None:
            session = EscalationSession(incident, ranked_candidates)
        if session.is_terminal:
            raise InvalidTransitionError(
                f"Session {session.session_id} already finished as {session.status.value}."
            )

        batches = partition_batches(list(ranked_candidates), config.batch_size)
        logger.info(
            "Escalating incident %s for device %s: %d candidates in %d batches",
            incident.incident_id,
            incident.device_id,
            len(ranked_candidates),
            len(batches),
            extra={"session_id": session.session_id},
        )

        try:
            for batch_index, batch in enumerate(batches):
                session.batches_started += 1
                winner = await self._run_batch(session, batch, batch_index, config)
                if winner is not None:
                    session.mark_accepted(winner)
                    return session.outcome()
                logger.info(
                    "No acceptance from batch %d of session %s; moving on",
                    batch_index + 1,
                    session.session_id,
                    extra={"session_id": session.session_id, "batch_index": batch_index},
                )
        except asyncio.CancelledError:
            if not session.is_terminal:
                logger.warning(
                    "Escalation of session %s cancelled during batch %d; closing it as exhausted",
                    session.session_id,
                    session.batches_started,
                    extra={"session_id": session.session_id},
                )
                session.mark_exhausted()
            raise

        session.mark_exhausted()
        return session.outcome()

    # -- batch --

    async def _run_batch(
        self,
        session: EscalationSession,
        batch: list[RankedCandidate],
        batch_index: int,
        config: DispatchConfig,
    ) -> Optional[RankedCandidate]:
        loop = asyncio.get_running_loop()
        acceptances: list[_Acceptance] = []
        tasks = [
            asyncio.create_task(
                self._notify_facility(session, candidate, batch_index, config, acceptances),
                name=f"notify-{candidate.facility_id}",
            )
            for candidate in batch
        ]
        logger.debug(
            "Batch %d started with %s",
            batch_index + 1,
            [c.facility_id for c in batch],
            extra={"session_id": session.session_id, "batch_index": batch_index},
        )

        deadline = loop.time() + config.acceptance_window
        pending = set(tasks)
        try:
            while pending and not acceptances:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info(
                        "Acceptance window of %gs elapsed for batch %d; abandoning %d attempts",
                        config.acceptance_window,
                        batch_index + 1,
                        len(pending),
                        extra={"session_id": session.session_id, "batch_index": batch_index},
                    )
                    break
                _, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Notification task %s crashed: %r",
                    task.get_name(),
                    task.exception(),
                    extra={"session_id": session.session_id},
                )

        if not acceptances:
            return None

        acceptances.sort(key=lambda a: a.sort_key)
        winner = acceptances[0].candidate
        for late in acceptances[1:]:
            logger.warning(
                "Acceptance from %s ignored; %s accepted first",
                late.candidate.facility_id,
                winner.facility_id,
                extra={
                    "session_id": session.session_id,
                    "facility_id": late.candidate.facility_id,
                },
            )
        return winner

    # -- per facility --

    async def _notify_facility(
        self,
        session: EscalationSession,
        candidate: RankedCandidate,
        batch_index: int,
        config: DispatchConfig,
        acceptances: list[_Acceptance],
    ) -> None:
        facility = candidate.facility
        kinds = self.usable_channels(facility, config)
        if not kinds:
            session.record_attempt(
                facility.facility_id, None, AttemptOutcome.ERROR, NO_COMM_PATH, batch_index
            )
            return

        loop = asyncio.get_running_loop()
        for kind in kinds:
            result = await self._attempt(kind, facility, session.incident, config)
            session.record_attempt(
                facility.facility_id, kind, result.outcome, result.detail, batch_index
            )
            logger.debug(
                "%s via %s -> %s (%s)",
                facility.facility_id,
                kind.value,
                result.outcome.value,
                result.detail,
                extra={
                    "session_id": session.session_id,
                    "facility_id": facility.facility_id,
                    "channel": kind.value,
                    "outcome": result.outcome.value,
                    "batch_index": batch_index,
                },
            )
            if result.is_accepted:
                acceptances.append(_Acceptance(loop.time(), candidate))
                return

    async def _attempt(
        self,
        kind: ChannelKind,
        facility: Facility,
        incident: Incident,
        config: DispatchConfig,
    ) -> ChannelResult:
        adapter = self._adapters[kind]
        timeout = config.per_channel_timeout
        try:
            return await asyncio.wait_for(
                adapter.attempt_notify(facility, incident, timeout), timeout
            )
        except asyncio.TimeoutError:
            return ChannelResult.no_response(f"no answer within {timeout:g}s")
        except ChannelFailure as exc:
            return ChannelResult.error(str(exc))
        except Exception as exc:
            # A broken adapter degrades this one attempt only.
            logger.exception("Adapter %s raised for %s", kind.value, facility.facility_id)
            return ChannelResult.error(f"{type(exc).__name__}: {exc}")
