"""Tests for the history poller: classification, bounds, fast path, lookups."""
import asyncio

import pytest

from genrelay.services.media_urls import VIDEO_URL_PATTERN
from genrelay.services.poller import (
    RECORD_NOT_FOUND,
    CancellationToken,
    GenerationFailedError,
    GenerationTimeoutError,
    PollCancelledError,
    PollState,
    PollStatus,
    LookupResult,
    SmartPoller,
    extract_history_record,
    history_lookup,
)

HID = "h-123"


def status(code, items=0, fail_code=None):
    return PollStatus(status=code, history_id=HID, fail_code=fail_code, item_count=items)


class ScriptedLookup:
    """Replays a list of LookupResults; the last one repeats forever."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, cancel_token):
        self.calls += 1
        index = min(self.calls, len(self.results)) - 1
        return self.results[index]


class FakeClock:
    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def poller(**overrides):
    kwargs = dict(interval=0, max_poll_count=50, timeout_seconds=60, max_not_found=30)
    kwargs.update(overrides)
    return SmartPoller(**kwargs)


@pytest.mark.asyncio
async def test_not_found_then_processing_then_success():
    lookup = ScriptedLookup(
        LookupResult(None),
        LookupResult(None),
        LookupResult(status(20)),
        LookupResult(status(10, items=1), {"item_list": [{}]}),
    )
    result = await poller().poll(lookup, HID)

    assert result.state is PollState.SUCCEEDED
    assert result.attempts == 4
    assert lookup.calls == 4
    assert result.status.status == 10


@pytest.mark.asyncio
async def test_success_code_without_enough_items_keeps_waiting():
    lookup = ScriptedLookup(
        LookupResult(status(50, items=1)),
        LookupResult(status(50, items=4)),
    )
    result = await poller(expected_item_count=4).poll(lookup, HID)
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_never_finishes_times_out_on_count():
    lookup = ScriptedLookup(LookupResult(status(20)))
    with pytest.raises(GenerationTimeoutError) as exc_info:
        await poller(max_poll_count=3).poll(lookup, HID)

    assert lookup.calls == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.history_id == HID
    assert "check back later" in str(exc_info.value)


@pytest.mark.asyncio
async def test_times_out_on_elapsed_time():
    lookup = ScriptedLookup(LookupResult(status(20)))
    with pytest.raises(GenerationTimeoutError) as exc_info:
        await poller(timeout_seconds=10, clock=FakeClock(step=2.5)).poll(lookup, HID)
    assert exc_info.value.elapsed >= 10
    assert lookup.calls < 50


@pytest.mark.asyncio
async def test_failed_status_stops_immediately():
    lookup = ScriptedLookup(LookupResult(status(30)))
    with pytest.raises(GenerationFailedError):
        await poller().poll(lookup, HID)
    assert lookup.calls == 1


@pytest.mark.asyncio
async def test_fail_code_overrides_processing_status():
    lookup = ScriptedLookup(LookupResult(status(20, fail_code="2038")))
    with pytest.raises(GenerationFailedError) as exc_info:
        await poller().poll(lookup, HID)
    assert exc_info.value.fail_code == "2038"
    assert lookup.calls == 1


@pytest.mark.parametrize("fail_code", [None, "", "0", 0])
def test_empty_fail_codes_are_ignored(fail_code):
    assert poller().classify(status(20, fail_code=fail_code)) is PollState.WAITING


def test_classify_success_codes():
    p = poller()
    assert p.classify(status(10, items=1)) is PollState.SUCCEEDED
    assert p.classify(status(50, items=1)) is PollState.SUCCEEDED
    assert p.classify(status(30)) is PollState.FAILED
    assert p.classify(status(42)) is PollState.WAITING


@pytest.mark.asyncio
async def test_url_in_raw_payload_short_circuits():
    url = "https://v3-artist.vlabvod.com/obj/abc/video.mp4?x=1"
    lookup = ScriptedLookup(
        LookupResult(status(20), {"some": {"nested": f"prefix {url}"}}),
    )
    result = await poller(url_pattern=VIDEO_URL_PATTERN).poll(lookup, HID)
    assert result.state is PollState.SUCCEEDED
    assert result.url == url
    assert lookup.calls == 1


@pytest.mark.asyncio
async def test_record_never_visible_gives_up():
    lookup = ScriptedLookup(LookupResult(None))
    with pytest.raises(GenerationFailedError) as exc_info:
        await poller(max_not_found=5).poll(lookup, HID)
    assert exc_info.value.fail_code == RECORD_NOT_FOUND
    assert lookup.calls == 5


@pytest.mark.asyncio
async def test_cancelled_before_first_lookup():
    token = CancellationToken()
    token.cancel()
    lookup = ScriptedLookup(LookupResult(status(20)))
    with pytest.raises(PollCancelledError):
        await poller().poll(lookup, HID, token)
    assert lookup.calls == 0


@pytest.mark.asyncio
async def test_cancel_wakes_sleeping_poll():
    token = CancellationToken()
    lookup = ScriptedLookup(LookupResult(status(20)))
    task = asyncio.create_task(poller(interval=30).poll(lookup, HID, token))
    await asyncio.sleep(0.05)
    token.cancel()
    with pytest.raises(PollCancelledError):
        await asyncio.wait_for(task, timeout=2)
    assert lookup.calls == 1


def test_extract_history_record_shapes():
    record = {"status": 10}
    assert extract_history_record({HID: record}, HID) is record
    assert extract_history_record({"history_records": [record]}, HID) is record
    assert extract_history_record({}, HID) is None
    assert extract_history_record(None, HID) is None


class FakeHistoryClient:
    def __init__(self, by_ids, records=None, records_exc=None):
        self.by_ids = by_ids
        self.records = records
        self.records_exc = records_exc
        self.calls = []

    async def get_history_by_ids(self, ids):
        self.calls.append("by_ids")
        return self.by_ids

    async def get_history_records(self, ids):
        self.calls.append("records")
        if self.records_exc:
            raise self.records_exc
        return self.records


@pytest.mark.asyncio
async def test_history_lookup_parses_record():
    client = FakeHistoryClient({HID: {
        "status": 50,
        "fail_code": "",
        "item_list": [{"video": {}}],
        "task": {"finish_time": 1700000000},
    }})
    result = await history_lookup(client, HID)(CancellationToken())
    assert result.status.status == 50
    assert result.status.item_count == 1
    assert result.status.finish_time == 1700000000
    assert result.data["item_list"] == [{"video": {}}]


@pytest.mark.asyncio
async def test_history_lookup_missing_record():
    result = await history_lookup(FakeHistoryClient({}), HID)(CancellationToken())
    assert result.status is None


@pytest.mark.asyncio
async def test_history_lookup_alternates_and_falls_back():
    client = FakeHistoryClient(
        {HID: {"status": 20}},
        records_exc=RuntimeError("alternate endpoint down"),
    )
    lookup = history_lookup(client, HID, alternate_after=1)
    token = CancellationToken()
    first = await lookup(token)
    second = await lookup(token)

    assert client.calls == ["by_ids", "records", "by_ids"]
    assert first.status.status == 20
    assert second.status.status == 20


@pytest.mark.asyncio
async def test_history_lookup_uses_alternate_result():
    client = FakeHistoryClient(
        {},
        records={"history_records": [{"status": 10, "item_list": [{}]}]},
    )
    lookup = history_lookup(client, HID, alternate_after=0)
    token = CancellationToken()
    await lookup(token)
    result = await lookup(token)
    assert client.calls == ["by_ids", "records"]
    assert result.status.status == 10
