"""Tests for the retrying delivery dispatcher."""

from unittest.mock import MagicMock

import pytest_asyncio

from core.hvac_runtime.dispatcher import Dispatcher
from core.hvac_runtime.exceptions import PersistenceFailure, SinkDeliveryFailure


@pytest_asyncio.fixture
async def dispatcher():
    d = Dispatcher("test", max_attempts=3, base_delay_seconds=0)
    await d.start()
    yield d
    await d.stop()


class TestDelivery:
    async def test_successful_job(self, dispatcher):
        call = MagicMock(return_value=True)
        assert dispatcher.submit("job", call)
        await dispatcher.join()

        call.assert_called_once()
        assert dispatcher.stats() == {"pending": 0, "delivered": 1, "failed": 0, "dropped": 0}

    async def test_retries_until_success(self, dispatcher):
        call = MagicMock(side_effect=[SinkDeliveryFailure("boom"), SinkDeliveryFailure("boom"), True])
        dispatcher.submit("flaky", call)
        await dispatcher.join()

        assert call.call_count == 3
        assert dispatcher.delivered == 1
        assert dispatcher.failed == 0

    async def test_gives_up_after_max_attempts(self, dispatcher):
        call = MagicMock(side_effect=SinkDeliveryFailure("down"))
        dispatcher.submit("doomed", call)
        await dispatcher.join()

        assert call.call_count == dispatcher.max_attempts
        assert dispatcher.failed == 1
        assert dispatcher.delivered == 0

    async def test_failed_job_does_not_block_the_next(self, dispatcher):
        failing = MagicMock(side_effect=PersistenceFailure("disk"))
        ok = MagicMock(return_value=None)
        dispatcher.submit("first", failing)
        dispatcher.submit("second", ok)
        await dispatcher.join()

        ok.assert_called_once()
        assert dispatcher.failed == 1
        assert dispatcher.delivered == 1

    async def test_jobs_run_in_submission_order(self, dispatcher):
        seen = []
        for i in range(5):
            dispatcher.submit(f"job-{i}", lambda i=i: seen.append(i))
        await dispatcher.join()
        assert seen == [0, 1, 2, 3, 4]


class TestLifecycle:
    async def test_full_queue_drops_job(self):
        d = Dispatcher("tiny", max_queue=1)
        assert d.submit("first", MagicMock())
        assert not d.submit("second", MagicMock())
        assert d.dropped == 1
        assert d.pending == 1

    async def test_stop_is_idempotent(self):
        d = Dispatcher("idle", base_delay_seconds=0)
        await d.start()
        await d.stop()
        await d.stop()
        assert d._task.done()

