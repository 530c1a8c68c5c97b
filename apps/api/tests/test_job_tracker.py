import pytest

from services.generation_types import PredictionStatus, PredictionStatusError
from services.job_tracker import check_once, poll_prediction

from fakes import ScriptedProvider, failed, running, succeeded


class _RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.mark.asyncio
async def test_poll_sleeps_before_each_check_and_stops_at_success():
    provider = ScriptedProvider(statuses=[running(), running(), succeeded()])
    sleep = _RecordingSleep()

    result = await poll_prediction(provider, "job-1", interval_seconds=5, max_attempts=60, sleep=sleep)

    assert result.status == "succeeded"
    assert result.output == "https://replicate.delivery/out/job-1.png"
    assert result.attempts == 3
    assert sleep.calls == [5, 5, 5]
    assert provider.status_calls == 3


@pytest.mark.asyncio
async def test_poll_returns_failure_with_error():
    provider = ScriptedProvider(statuses=[running(), failed(error="model crashed")])

    result = await poll_prediction(provider, "job-1", interval_seconds=0, max_attempts=60, sleep=_RecordingSleep())

    assert result.status == "failed"
    assert result.error == "model crashed"
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_poll_times_out_exactly_at_budget():
    provider = ScriptedProvider(statuses=[running()])
    sleep = _RecordingSleep()

    result = await poll_prediction(provider, "job-1", interval_seconds=5, max_attempts=4, sleep=sleep)

    assert result.status == "timeout"
    assert result.attempts == 4
    assert provider.status_calls == 4
    assert len(sleep.calls) == 4


@pytest.mark.asyncio
async def test_success_on_last_allowed_attempt_is_not_a_timeout():
    provider = ScriptedProvider(statuses=[running(), running(), running(), succeeded()])

    result = await poll_prediction(provider, "job-1", interval_seconds=0, max_attempts=4, sleep=_RecordingSleep())

    assert result.status == "succeeded"
    assert result.attempts == 4


@pytest.mark.asyncio
async def test_transient_status_errors_count_as_attempts():
    provider = ScriptedProvider(
        statuses=[PredictionStatusError("502 from upstream"), PredictionStatusError("timeout"), succeeded()]
    )

    result = await poll_prediction(provider, "job-1", interval_seconds=0, max_attempts=5, sleep=_RecordingSleep())

    assert result.status == "succeeded"
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_success_without_output_is_treated_as_failure():
    provider = ScriptedProvider(statuses=[PredictionStatus(job_handle="job-1", status="succeeded", output=None)])

    result = await poll_prediction(provider, "job-1", interval_seconds=0, max_attempts=2, sleep=_RecordingSleep())

    assert result.status == "failed"


@pytest.mark.asyncio
async def test_check_once_is_non_blocking():
    assert await check_once(ScriptedProvider(statuses=[running()]), "job-1") is None
    assert await check_once(ScriptedProvider(statuses=[PredictionStatusError("down")]), "job-1") is None
    done = await check_once(ScriptedProvider(statuses=[succeeded()]), "job-1")
    assert done.status == "succeeded"
