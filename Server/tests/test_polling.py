"""
PollingTask unit tests

- bounded attempt budget and cadence
- terminal outcomes
- transient errors and not-yet-terminal snapshots
- progress reporting
"""

import httpx
import pytest

from integrations.meshy_client import MeshyAPIError, MeshyTaskError
from services.polling import PollingTask, PollResult, poll_task

from conftest import MESH_URL, FakeMeshyClient, make_task, succeeded


def _poller(fake_sleep, **kwargs):
    options = {"interval": 5.0, "max_attempts": 5, "initial_delay": 2.0, "sleep": fake_sleep}
    options.update(kwargs)
    return PollingTask(**options)


class TestPollingBudget:
    """Attempt budget and spacing"""

    async def test_in_progress_forever_times_out_after_exactly_max_attempts(self, fake_sleep):
        client = FakeMeshyClient()
        poller = _poller(fake_sleep, max_attempts=5)

        outcome = await poller.poll("task-1", client.check_status)

        assert outcome.result == PollResult.TIMEOUT
        assert outcome.attempts == 5
        assert client.status_calls == ["task-1"] * 5
        assert "5 status checks" in outcome.reason

    async def test_checks_are_spaced_by_interval_after_initial_delay(self, fake_sleep):
        client = FakeMeshyClient()
        poller = _poller(fake_sleep, max_attempts=4, interval=5.0, initial_delay=2.0)

        await poller.poll("task-1", client.check_status)

        assert fake_sleep.delays == [2.0, 5.0, 5.0, 5.0]

    async def test_zero_initial_delay_checks_immediately(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", succeeded(MESH_URL))

        outcome = await _poller(fake_sleep, initial_delay=0).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert fake_sleep.delays == []

    def test_rejects_empty_budget(self):
        with pytest.raises(ValueError):
            PollingTask(max_attempts=0)

    def test_rejects_negative_interval(self):
        with pytest.raises(ValueError):
            PollingTask(interval=-1)


class TestPollingOutcomes:
    """Terminal and non-terminal snapshots"""

    async def test_success_returns_artifact_url(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task(), make_task(), succeeded(MESH_URL))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert outcome.artifact_url == MESH_URL

    async def test_success_without_url_keeps_polling(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("SUCCEEDED"), succeeded(MESH_URL))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert outcome.attempts == 2

    async def test_success_without_url_until_budget_is_a_timeout(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("SUCCEEDED"))

        outcome = await _poller(fake_sleep, max_attempts=3).poll("task-1", client.check_status)

        assert outcome.result == PollResult.TIMEOUT
        assert outcome.artifact_url is None

    async def test_failed_carries_upstream_message(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("FAILED", error="Prompt rejected by moderation"))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.result == PollResult.FAILED
        assert outcome.reason == "Prompt rejected by moderation"
        assert outcome.attempts == 1

    async def test_canceled(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("CANCELED"))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.result == PollResult.CANCELED

    async def test_unknown_status_is_not_terminal(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("WARMING_UP"), succeeded(MESH_URL))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert outcome.attempts == 2

    async def test_transport_errors_are_retried_and_count_as_attempts(self, fake_sleep):
        client = FakeMeshyClient()
        client.script(
            "task-1",
            httpx.ConnectError("connection refused"),
            MeshyAPIError(502, "Bad gateway"),
            succeeded(MESH_URL),
        )

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert outcome.attempts == 3

    async def test_unparseable_status_body_is_retried(self, fake_sleep):
        client = FakeMeshyClient()
        client.script(
            "task-1",
            MeshyAPIError(200, "invalid JSON in rigging status response"),
            succeeded(MESH_URL),
        )

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        assert outcome.succeeded
        assert outcome.attempts == 2

    async def test_transport_errors_until_budget_time_out(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", httpx.ReadTimeout("slow"))

        outcome = await _poller(fake_sleep, max_attempts=2).poll("task-1", client.check_status)

        assert outcome.result == PollResult.TIMEOUT
        assert outcome.task is None

    async def test_raise_for_result(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task("FAILED", error="out of credits"))

        outcome = await _poller(fake_sleep).poll("task-1", client.check_status)

        with pytest.raises(MeshyTaskError) as exc_info:
            outcome.raise_for_result()
        assert exc_info.value.status == "failed"
        assert "out of credits" in str(exc_info.value)

    async def test_poll_task_shorthand(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", succeeded(MESH_URL))

        outcome = await poll_task("task-1", client.check_status, sleep=fake_sleep)

        assert outcome.succeeded


class TestPollingProgress:
    """Progress callbacks"""

    async def test_fallback_percent_from_attempts(self, fake_sleep):
        client = FakeMeshyClient()
        reports = []
        poller = _poller(fake_sleep, max_attempts=4, on_progress=reports.append)

        await poller.poll("task-1", client.check_status)

        assert [r.attempt for r in reports] == [1, 2, 3, 4]
        assert [r.percent for r in reports] == [22.5, 45.0, 67.5, 90.0]
        assert all(r.max_attempts == 4 for r in reports)

    async def test_upstream_progress_wins(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task(progress=40), succeeded(MESH_URL))
        reports = []

        await _poller(fake_sleep, on_progress=reports.append).poll("task-1", client.check_status)

        assert reports[0].percent == 40.0
        assert reports[-1].percent == 100.0

    async def test_estimate_counts_down(self, fake_sleep):
        client = FakeMeshyClient()
        reports = []
        poller = _poller(fake_sleep, max_attempts=3, interval=5.0, expected_seconds=12.0, on_progress=reports.append)

        await poller.poll("task-1", client.check_status)

        assert [r.estimated_seconds_remaining for r in reports] == [7.0, 2.0, 0.0]

    async def test_callback_errors_do_not_stop_polling(self, fake_sleep):
        client = FakeMeshyClient()
        client.script("task-1", make_task(), succeeded(MESH_URL))

        def broken(progress):
            raise RuntimeError("viewer went away")

        outcome = await _poller(fake_sleep, on_progress=broken).poll("task-1", client.check_status)

        assert outcome.succeeded
