"""Smart poller for long-running generation records.

Repeatedly runs one history lookup at a fixed interval until the
record succeeds, fails, or the attempt/time bounds run out.

Quirks it tolerates:
- A record that is not visible yet right after submission counts as
  "still processing" (bounded by ``max_not_found`` consecutive misses).
- Some responses carry the final media URL in an unrelated field before the
  status flips; a regex scan of the raw payload short-circuits to success.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Pattern

from genrelay.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Provider record status codes
STATUS_SUCCESS_CODES = frozenset({10, 50})
STATUS_FAILED_CODES = frozenset({30})

RECORD_NOT_FOUND = "record_not_found"


class PollState(str, enum.Enum):
    WAITING = "WAITING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class PollStatus:
    """Status descriptor distilled from one history record."""

    status: int
    history_id: str
    fail_code: str | None = None
    item_count: int = 0
    finish_time: int = 0

    @property
    def has_fail_code(self) -> bool:
        return self.fail_code not in (None, "", "0", 0)


@dataclass
class LookupResult:
    """One lookup's outcome. ``status is None`` means the record is not visible yet."""

    status: PollStatus | None
    data: Any = None


@dataclass
class PollResult:
    state: PollState
    attempts: int
    elapsed: float
    status: PollStatus | None = None
    data: Any = None
    url: str | None = None


class CancellationToken:
    """Cooperative cancel flag shared between a caller and a running poll."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early when cancelled."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


Lookup = Callable[[CancellationToken], Awaitable[LookupResult]]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PollError(Exception):
    """Base class for non-success poll outcomes."""

    def __init__(self, message: str, history_id: str | None = None):
        super().__init__(message)
        self.history_id = history_id


class GenerationFailedError(PollError):
    """The provider reported the record as failed."""

    def __init__(self, fail_code: str | None, history_id: str | None = None, message: str | None = None):
        super().__init__(
            message or f"generation failed (fail_code={fail_code})", history_id,
        )
        self.fail_code = fail_code


class GenerationTimeoutError(PollError):
    """Poll bounds ran out while the record was still processing."""

    def __init__(self, attempts: int, elapsed: float, history_id: str | None = None):
        super().__init__(
            f"generation still running after {attempts} checks ({elapsed:.0f}s), "
            f"check back later (history_id={history_id})",
            history_id,
        )
        self.attempts = attempts
        self.elapsed = elapsed


class PollCancelledError(PollError):
    """The caller cancelled the poll."""


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class SmartPoller:
    """Fixed-interval poller bounded by attempt count and wall-clock time."""

    def __init__(
        self,
        *,
        interval: float | None = None,
        max_poll_count: int | None = None,
        timeout_seconds: float | None = None,
        expected_item_count: int = 1,
        max_not_found: int | None = None,
        url_pattern: str | Pattern[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = settings.POLL_INTERVAL if interval is None else interval
        self.max_poll_count = settings.POLL_MAX_COUNT if max_poll_count is None else max_poll_count
        self.timeout_seconds = settings.POLL_TIMEOUT if timeout_seconds is None else timeout_seconds
        self.expected_item_count = expected_item_count
        self.max_not_found = settings.POLL_MAX_NOT_FOUND if max_not_found is None else max_not_found
        self.url_pattern = re.compile(url_pattern) if isinstance(url_pattern, str) else url_pattern
        self._clock = clock
        self.last_lookup: LookupResult | None = None

    def classify(self, status: PollStatus) -> PollState:
        """Map one status descriptor to a poll state (ignoring bounds)."""
        if status.has_fail_code or status.status in STATUS_FAILED_CODES:
            return PollState.FAILED
        if status.status in STATUS_SUCCESS_CODES and status.item_count >= self.expected_item_count:
            return PollState.SUCCEEDED
        return PollState.WAITING

    def scan_for_url(self, data: Any) -> str | None:
        """Fallback: find a final media URL anywhere in the raw payload."""
        if self.url_pattern is None or data is None:
            return None
        text = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
        match = self.url_pattern.search(text)
        return match.group(0) if match else None

    async def poll(
        self,
        lookup: Lookup,
        history_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> PollResult:
        """Poll until a terminal state.

        Returns:
            The SUCCEEDED PollResult.

        Raises:
            GenerationFailedError: Provider reported failure, or the record
                stayed invisible for ``max_not_found`` lookups in a row.
            GenerationTimeoutError: ``max_poll_count`` or ``timeout_seconds`` ran out.
            PollCancelledError: ``cancel_token`` was cancelled.
        """
        cancel_token = cancel_token or CancellationToken()
        started: float | None = None
        attempts = 0
        not_found = 0

        logger.info(
            "Polling %s (interval=%.1fs, max=%d, timeout=%.0fs)",
            history_id, self.interval, self.max_poll_count, self.timeout_seconds,
        )

        while True:
            if cancel_token.cancelled:
                raise PollCancelledError(f"polling cancelled for {history_id}", history_id)

            if started is None:
                started = self._clock()
            attempts += 1
            result = await lookup(cancel_token)
            self.last_lookup = result
            elapsed = self._clock() - started

            url = self.scan_for_url(result.data)
            if url:
                logger.info("Poll %s: found result URL in raw response on attempt %d", history_id, attempts)
                return PollResult(PollState.SUCCEEDED, attempts, elapsed, result.status, result.data, url)

            status = result.status
            if status is None:
                not_found += 1
                logger.debug("Poll %s: record not visible yet (%d in a row)", history_id, not_found)
                if self.max_not_found and not_found >= self.max_not_found:
                    logger.error("Poll %s: record not found after %d lookups", history_id, not_found)
                    raise GenerationFailedError(
                        RECORD_NOT_FOUND,
                        history_id,
                        f"history record {history_id} not found after {not_found} checks",
                    )
                state = PollState.WAITING
            else:
                not_found = 0
                state = self.classify(status)
                logger.debug(
                    "Poll %s attempt %d: status=%s items=%d fail_code=%s",
                    history_id, attempts, status.status, status.item_count, status.fail_code,
                )

            if state is PollState.SUCCEEDED:
                logger.info("Poll %s succeeded after %d attempts (%.1fs)", history_id, attempts, elapsed)
                return PollResult(state, attempts, elapsed, status, result.data)

            if state is PollState.FAILED:
                logger.error("Poll %s failed: status=%s fail_code=%s", history_id, status.status, status.fail_code)
                raise GenerationFailedError(status.fail_code or str(status.status), history_id)

            if attempts >= self.max_poll_count or elapsed >= self.timeout_seconds:
                logger.warning("Poll %s timed out after %d attempts (%.1fs)", history_id, attempts, elapsed)
                raise GenerationTimeoutError(attempts, elapsed, history_id)

            await cancel_token.sleep(self.interval)


# ---------------------------------------------------------------------------
# History lookup
# ---------------------------------------------------------------------------

def extract_history_record(payload: Any, history_id: str) -> dict[str, Any] | None:
    """Pull one record out of either response shape (keyed map or history_records list)."""
    if not isinstance(payload, dict):
        return None
    record = payload.get(history_id)
    if isinstance(record, dict):
        return record
    records = payload.get("history_records")
    if isinstance(records, list) and records and isinstance(records[0], dict):
        return records[0]
    return None


def status_from_record(record: dict[str, Any], history_id: str) -> PollStatus:
    return PollStatus(
        status=int(record.get("status") or 0),
        history_id=history_id,
        fail_code=record.get("fail_code"),
        item_count=len(record.get("item_list") or []),
        finish_time=int((record.get("task") or {}).get("finish_time") or 0),
    )


def history_lookup(client: Any, history_id: str, *, alternate_after: int | None = None) -> Lookup:
    """Build a lookup around ``client.get_history_by_ids``.

    With ``alternate_after`` set, every other attempt past that count tries
    ``client.get_history_records`` first and falls back to the standard
    endpoint when it errors or returns nothing usable.
    """
    attempts = 0

    async def lookup(cancel_token: CancellationToken) -> LookupResult:
        nonlocal attempts
        attempts += 1

        if alternate_after is not None and attempts > alternate_after and attempts % 2 == 0:
            try:
                payload = await client.get_history_records([history_id])
            except Exception as exc:
                logger.warning("Alternate history lookup failed for %s: %s", history_id, exc)
            else:
                record = extract_history_record(payload, history_id)
                if record is not None:
                    return LookupResult(status_from_record(record, history_id), record)
                logger.warning("Alternate history lookup returned nothing for %s", history_id)

        payload = await client.get_history_by_ids([history_id])
        record = extract_history_record(payload, history_id)
        if record is None:
            return LookupResult(None, payload)
        return LookupResult(status_from_record(record, history_id), record)

    return lookup
