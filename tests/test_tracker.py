import copy

import pytest

from sentinel_proxy.tracker import UsageData, UsageTracker

U64_MAX = 2**64 - 1


class FakeZion:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def increment_usage(
        self, external_id, input_tokens, output_tokens, requests, model, timestamp
    ):
        self.calls.append(
            (external_id, input_tokens, output_tokens, requests, model, timestamp)
        )
        if self.error is not None:
            raise self.error
        return {"ok": True}


def test_usage_data_new():
    usage = UsageData(100, 50, count_request=True)
    assert usage.input_tokens == 100
    assert usage.output_tokens == 50
    assert usage.count_request
    assert usage.total_tokens() == 150
    assert usage.has_usage()


def test_usage_data_tokens_only():
    usage = UsageData.tokens_only(100, 50)
    assert not usage.count_request
    assert usage.has_usage()


def test_usage_data_empty():
    assert not UsageData().has_usage()
    assert UsageData(0, 0, True).has_usage()


def test_usage_data_new_zero_tokens():
    usage = UsageData(0, 0, True)
    assert usage.total_tokens() == 0
    assert usage.has_usage()


def test_usage_data_tokens_only_zero():
    usage = UsageData.tokens_only(0, 0)
    assert usage.input_tokens == 0
    assert usage.output_tokens == 0
    assert not usage.count_request
    assert not usage.has_usage()


def test_usage_data_large_values():
    usage = UsageData(U64_MAX, U64_MAX, True)
    assert usage.input_tokens == U64_MAX
    assert usage.output_tokens == U64_MAX


def test_usage_data_input_only():
    usage = UsageData(1000, 0, True)
    assert usage.total_tokens() == 1000
    assert usage.has_usage()


def test_usage_data_output_only():
    usage = UsageData(0, 500, True)
    assert usage.total_tokens() == 500
    assert usage.has_usage()


@pytest.mark.parametrize(
    "inp,out,expected",
    [(0, 0, 0), (100, 0, 100), (0, 100, 100), (100, 100, 200), (1000, 500, 1500), (999, 1, 1000)],
)
def test_total_tokens_calculation(inp, out, expected):
    assert UsageData(inp, out, True).total_tokens() == expected


@pytest.mark.parametrize(
    "inp,out,req,expected",
    [
        (100, 0, False, True),
        (0, 100, False, True),
        (0, 0, True, True),
        (0, 0, False, False),
        (100, 50, True, True),
    ],
)
def test_has_usage_scenarios(inp, out, req, expected):
    assert UsageData(inp, out, req).has_usage() is expected


def test_usage_data_default():
    usage = UsageData()
    assert usage.input_tokens == 0
    assert usage.output_tokens == 0
    assert usage.count_request is False
    assert usage.total_tokens() == 0
    assert not usage.has_usage()


def test_usage_data_copy():
    usage = UsageData(100, 50, True)
    cloned = copy.copy(usage)
    assert cloned == usage


def test_usage_data_repr():
    text = repr(UsageData(100, 50, True))
    assert "UsageData" in text
    assert "100" in text
    assert "50" in text


def test_streaming_response_final_usage():
    usage = UsageData(1000, 2000, True)
    assert usage.total_tokens() == 3000
    assert usage.count_request


def test_incremental_token_tracking():
    first = UsageData.tokens_only(100, 0)
    second = UsageData.tokens_only(0, 50)
    assert not first.count_request and first.has_usage()
    assert not second.count_request and second.has_usage()


def test_max_tokens_has_usage():
    usage = UsageData(U64_MAX, 0, False)
    assert usage.input_tokens == U64_MAX
    assert usage.has_usage()


def test_negative_tokens_rejected():
    with pytest.raises(ValueError):
        UsageData(-1, 0)


@pytest.mark.asyncio
async def test_record_usage_sends_single_call():
    zion = FakeZion()
    await UsageTracker(zion).record_usage("ext-1", 100, 50)
    assert zion.calls == [("ext-1", 100, 50, 1, None, None)]


@pytest.mark.asyncio
async def test_record_streaming_usage_counts_request():
    zion = FakeZion()
    await UsageTracker(zion).record_streaming_usage("ext-2", 1000, 2000)
    assert zion.calls == [("ext-2", 1000, 2000, 1, None, None)]


@pytest.mark.asyncio
async def test_record_tokens_only_sends_zero_requests():
    zion = FakeZion()
    await UsageTracker(zion).record_tokens_only("ext-3", 10, 5)
    assert zion.calls == [("ext-3", 10, 5, 0, None, None)]


@pytest.mark.asyncio
async def test_record_empty_usage_sends_nothing():
    zion = FakeZion()
    tracker = UsageTracker(zion)
    await tracker.record_usage_data("ext-4", UsageData())
    await tracker.record_tokens_only("ext-4", 0, 0)
    assert zion.calls == []


@pytest.mark.asyncio
async def test_record_usage_zero_tokens_still_counts_request():
    zion = FakeZion()
    await UsageTracker(zion).record_usage("ext-5", 0, 0)
    assert zion.calls == [("ext-5", 0, 0, 1, None, None)]


@pytest.mark.asyncio
async def test_record_usage_propagates_client_error():
    zion = FakeZion(error=RuntimeError("zion down"))
    with pytest.raises(RuntimeError, match="zion down"):
        await UsageTracker(zion).record_usage("ext-6", 1, 1)
    assert len(zion.calls) == 1