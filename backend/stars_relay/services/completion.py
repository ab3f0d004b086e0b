"""
Completion detection for Fragment purchases.

Fragment never sends a single authoritative "finished" signal, and its
status flaps while the purchase settles. CompletionTracker turns the
stream of status polls into a decision; PurchaseStatusPoller feeds it.

The thresholds are tuned against observed upstream behaviour. A forced
completion only means Fragment stopped answering usefully, not that the
stars were credited, which is why it is reported separately.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from stars_relay.core.clock import Clock, system_clock
from stars_relay.core.config import settings
from stars_relay.core.constants import COMPLETION_MARKERS
from stars_relay.services.fragment import FragmentClient, PollResult, PurchaseSession

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    CONTINUE = "continue"
    PROBE_DONE = "probe_done"
    COMPLETED = "completed"
    FORCED = "forced"


def is_positive(poll: PollResult) -> bool:
    """An ok poll counts towards completion if it is in mode done or shows a success marker."""
    if not poll.ok:
        return False
    if poll.mode == "done":
        return True
    html = (poll.html or "").lower()
    return any(marker in html for marker in COMPLETION_MARKERS)


class CompletionTracker:
    def __init__(
        self,
        confirmations_required: Optional[int] = None,
        probe_every: Optional[int] = None,
        max_processing_polls: Optional[int] = None,
    ):
        self.confirmations_required = (
            confirmations_required or settings.fragment_confirmations_required
        )
        self.probe_every = probe_every or settings.fragment_done_probe_every
        self.max_processing_polls = max_processing_polls or settings.fragment_max_processing_polls
        self.positives = 0
        self.processing_polls = 0

    def observe(self, poll: PollResult) -> Decision:
        if not poll.ok:
            # Rejected or failed poll: breaks a positive streak but says nothing about processing
            self.positives = 0
            return Decision.CONTINUE

        if is_positive(poll):
            self.positives += 1
            self.processing_polls = 0
            if self.positives >= self.confirmations_required:
                return Decision.COMPLETED
            return Decision.CONTINUE

        self.positives = 0
        if poll.mode != "processing":
            self.processing_polls = 0
            return Decision.CONTINUE

        self.processing_polls += 1
        if self.processing_polls >= self.max_processing_polls:
            return Decision.FORCED
        if self.processing_polls % self.probe_every == 0:
            return Decision.PROBE_DONE
        return Decision.CONTINUE


@dataclass
class PollOutcome:
    completed: bool
    forced: bool = False
    attempts: int = 0
    error: Optional[str] = None


class PurchaseStatusPoller:
    """Polls updateStarsBuyState until the tracker reaches a decision."""

    def __init__(
        self,
        client: FragmentClient,
        clock: Clock = system_clock,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self._client = client
        self._clock = clock
        self._interval = interval if interval is not None else settings.fragment_poll_interval_seconds
        self._max_attempts = max_attempts or settings.fragment_poll_max_attempts

    async def wait(
        self,
        session: PurchaseSession,
        req_id: str,
        tracker: Optional[CompletionTracker] = None,
    ) -> PollOutcome:
        tracker = tracker or CompletionTracker()
        probe = False

        for attempt in range(1, self._max_attempts + 1):
            poll = await self._client.poll_status(session, req_id, mode="done" if probe else None)
            decision = tracker.observe(poll)
            probe = decision == Decision.PROBE_DONE

            if decision == Decision.COMPLETED:
                logger.info(f"fragment: purchase {req_id} completed after {attempt} polls")
                return PollOutcome(completed=True, attempts=attempt)
            if decision == Decision.FORCED:
                logger.warning(
                    f"fragment: purchase {req_id} stuck in processing for "
                    f"{tracker.processing_polls} polls, assuming completed"
                )
                return PollOutcome(completed=True, forced=True, attempts=attempt)
            if probe:
                logger.info(f"fragment: probing {req_id} with mode=done")

            await self._clock.sleep(self._interval)

        logger.error(f"fragment: purchase {req_id} not completed after {self._max_attempts} polls")
        return PollOutcome(
            completed=False,
            attempts=self._max_attempts,
            error="Timeout waiting for purchase completion",
        )
