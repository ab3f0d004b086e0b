from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest

from stars_relay.services.completion import CompletionTracker, Decision, PurchaseStatusPoller
from stars_relay.services.fragment import FragmentClient, PollResult, PurchaseSession


def _poll(mode: str, html: str = None, ok: bool = True, error: str = None) -> PollResult:
    return PollResult(ok=ok, mode=mode, dh="123456789", html=html, error=error)


def _tracker() -> CompletionTracker:
    return CompletionTracker(confirmations_required=3, probe_every=5, max_processing_polls=15)


def test_completion_needs_three_consecutive_positive_polls():
    tracker = _tracker()
    modes = ["processing", "processing", "done", "processing", "done", "done", "done"]

    decisions = [tracker.observe(_poll(mode)) for mode in modes]

    assert decisions[2] == Decision.CONTINUE
    assert decisions.index(Decision.COMPLETED) == 6


def test_success_marker_in_html_counts_as_positive():
    tracker = _tracker()
    html = "<div>Your purchase has been completed</div>"

    decisions = [tracker.observe(_poll("processing", html=html)) for _ in range(3)]

    assert decisions[-1] == Decision.COMPLETED


def test_russian_success_marker_counts_as_positive():
    tracker = _tracker()
    html = "<div>Звёзды успешно зачислены</div>"

    decisions = [tracker.observe(_poll("processing", html=html)) for _ in range(3)]

    assert decisions[-1] == Decision.COMPLETED


def test_probe_every_fifth_processing_poll_and_force_at_fifteen():
    tracker = _tracker()

    decisions = [tracker.observe(_poll("processing")) for _ in range(15)]

    assert [i for i, d in enumerate(decisions) if d == Decision.PROBE_DONE] == [4, 9]
    assert decisions[-1] == Decision.FORCED
    assert decisions[:-1].count(Decision.FORCED) == 0


def test_soft_failure_breaks_positive_streak_only():
    tracker = _tracker()
    tracker.observe(_poll("processing"))
    tracker.observe(_poll("processing"))
    tracker.observe(_poll("done"))

    assert tracker.observe(_poll("processing", ok=False, error="HTTP 502")) == Decision.CONTINUE
    assert tracker.positives == 0

    tracker.observe(_poll("done"))
    tracker.observe(_poll("done"))
    assert tracker.observe(_poll("done")) == Decision.COMPLETED


def test_rejected_done_poll_is_not_positive():
    tracker = _tracker()
    for _ in range(4):
        tracker.observe(_poll("processing"))

    assert tracker.observe(_poll("done", ok=False)) == Decision.CONTINUE
    assert tracker.positives == 0
    assert tracker.processing_polls == 4


def test_processing_counter_survives_soft_failure():
    tracker = _tracker()
    for _ in range(4):
        tracker.observe(_poll("processing"))
    tracker.observe(_poll("processing", ok=False, error="timeout"))

    assert tracker.observe(_poll("processing")) == Decision.PROBE_DONE


@pytest.mark.asyncio
async def test_poller_probes_with_done_mode(clock):
    client = AsyncMock()
    client.poll_status.side_effect = [_poll("processing")] * 5 + [_poll("done")] * 3
    poller = PurchaseStatusPoller(client, clock=clock, interval=2.0, max_attempts=20)

    outcome = await poller.wait(PurchaseSession(req_id="req-1"), "req-1", _tracker())

    assert outcome.completed and not outcome.forced
    assert outcome.attempts == 8
    modes = [call.kwargs["mode"] for call in client.poll_status.call_args_list]
    assert modes[5] == "done"
    assert modes[:5] == [None] * 5
    assert clock.sleeps == [2.0] * 7


@pytest.mark.asyncio
async def test_poller_reports_forced_completion(clock):
    client = AsyncMock()
    client.poll_status.return_value = _poll("processing")
    poller = PurchaseStatusPoller(client, clock=clock, interval=1.0, max_attempts=100)

    outcome = await poller.wait(PurchaseSession(), "req-1", _tracker())

    assert outcome.completed and outcome.forced
    assert outcome.attempts == 15


@pytest.mark.asyncio
async def test_poller_times_out(clock):
    client = AsyncMock()
    client.poll_status.return_value = _poll("new")
    poller = PurchaseStatusPoller(client, clock=clock, interval=1.0, max_attempts=4)

    outcome = await poller.wait(PurchaseSession(), "req-1", _tracker())

    assert not outcome.completed
    assert outcome.error
    assert client.poll_status.await_count == 4


@pytest.mark.asyncio
async def test_poller_forces_completion_when_done_polls_are_rejected(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form["mode"] == "done":
            return httpx.Response(200, json={"ok": False})
        return httpx.Response(200, json={"ok": True, "mode": "processing"})

    client = FragmentClient(
        base_url="https://fragment.test",
        api_hash="apihash",
        cookies={},
        transport=httpx.MockTransport(handler),
    )
    poller = PurchaseStatusPoller(client, clock=clock, interval=1.0, max_attempts=60)

    outcome = await poller.wait(PurchaseSession(req_id="req-1"), "req-1", _tracker())

    # 15 processing polls plus the rejected done polls after the 5th and 10th
    assert outcome.completed and outcome.forced
    assert outcome.attempts == 17
