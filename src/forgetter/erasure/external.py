"""Erasure of identifiers from the external analytics service.

Identifiers are sent in batches to the service's batch deletion endpoint.
At most ``concurrent_batches`` batches are in flight at once; a finished
batch immediately admits the next queued one. Each batch is retried on its
own: a poisoned batch never affects the outcome of its siblings.

Every HTTP exchange is classified exactly once, at the I/O boundary, into a
``DeliveryOutcome``:

- ``Delivered``: any 2xx response
- ``PermanentFailure``: 4xx responses (except 429), never retried
- ``TransientFailure``: 5xx, 429 and transport-level errors, retried with
  exponential backoff and jitter up to ``max_attempts``
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from forgetter.config.settings import DEFAULT_AMPLITUDE_API_URL
from forgetter.core.exceptions import ExternalPermanentError, ExternalTransientError
from forgetter.core.logging import get_logger, log_exception, log_external_call
from forgetter.erasure.partition import partition
from forgetter.erasure.types import BatchResult, ExternalOutcome, ExternalStatus

if TYPE_CHECKING:
    from forgetter.config.settings import Settings
    from forgetter.core.cancellation import CancellationToken

logger = get_logger(__name__)

SERVICE_NAME = "amplitude"
MAX_DETAIL_LENGTH = 500
CANCELLED_DETAIL = "Cancelled before dispatch"

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ExternalOptions:
    """Configuration of the external eraser."""

    api_key: str = field(default="", repr=False)
    secret_key: str = field(default="", repr=False)
    api_url: str = DEFAULT_AMPLITUDE_API_URL
    requester: str = "forgetter"

    batch_size: int = 300
    concurrent_batches: int = 4
    max_attempts: int = 5

    backoff_base: float = 1.0
    """Delay before the second attempt, in seconds."""

    backoff_cap: float = 15.0
    """Upper bound of any single delay, in seconds."""

    backoff_jitter: float = 0.25
    """Maximum random extra delay, in seconds."""

    timeout: float = 30.0

    def __post_init__(self) -> None:
        for name in ("batch_size", "concurrent_batches", "max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.backoff_cap < self.backoff_base:
            raise ValueError("backoff_cap must not be below backoff_base")

    @classmethod
    def from_settings(cls, settings: "Settings", requester: str | None = None) -> "ExternalOptions":
        """Build options from application settings."""
        return cls(
            api_key=settings.amplitude_key.get_secret_value() if settings.amplitude_key else "",
            secret_key=(
                settings.amplitude_secret_key.get_secret_value()
                if settings.amplitude_secret_key
                else ""
            ),
            api_url=settings.amplitude_api_url,
            requester=requester or settings.requested_by,
            batch_size=settings.amp_batch_size,
            concurrent_batches=settings.amp_concurrency,
            max_attempts=settings.amp_max_attempts,
            backoff_base=settings.amp_backoff_base_ms / 1000,
            backoff_cap=settings.amp_backoff_cap_ms / 1000,
            backoff_jitter=settings.amp_backoff_jitter_ms / 1000,
            timeout=settings.amp_timeout_s,
        )


# =============================================================================
# Delivery outcomes
# =============================================================================


@dataclass(frozen=True)
class Delivered:
    """The service accepted the batch."""

    status_code: int


@dataclass(frozen=True)
class PermanentFailure:
    """The service rejected the batch; retrying will not help."""

    status_code: int
    detail: str


@dataclass(frozen=True)
class TransientFailure:
    """Temporary condition; the batch may be retried."""

    detail: str
    status_code: int | None = None


DeliveryOutcome = Delivered | PermanentFailure | TransientFailure


def classify_response(response: httpx.Response) -> DeliveryOutcome:
    """Decide once what an HTTP response means for the batch."""
    status = response.status_code
    if 200 <= status < 300:
        return Delivered(status_code=status)

    detail = response.text[:MAX_DETAIL_LENGTH]
    if status == 429 or status >= 500:
        return TransientFailure(detail=detail, status_code=status)
    return PermanentFailure(status_code=status, detail=detail)


def classify_transport_error(exc: httpx.RequestError) -> TransientFailure:
    """Transport failures (timeouts, resets, DNS) are always transient."""
    return TransientFailure(detail=f"{type(exc).__name__}: {exc}")


# =============================================================================
# Client
# =============================================================================


@asynccontextmanager
async def open_http_client(
    options: ExternalOptions,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client authenticated for the deletion endpoint.

    The credential is read-only shared state: every batch reuses the same
    client and connection pool.
    """
    async with httpx.AsyncClient(
        auth=httpx.BasicAuth(options.api_key, options.secret_key),
        timeout=options.timeout,
        headers={"Content-Type": "application/json"},
        transport=transport,
    ) as client:
        yield client


async def send_batch(
    client: httpx.AsyncClient,
    options: ExternalOptions,
    batch: Sequence[str],
) -> DeliveryOutcome:
    """POST one batch and classify the result."""
    try:
        response = await client.post(
            options.api_url,
            json={"user_ids": list(batch), "requester": options.requester},
        )
    except httpx.RequestError as e:
        return classify_transport_error(e)
    return classify_response(response)


def backoff_wait(options: ExternalOptions) -> wait_exponential_jitter:
    """Delay between attempts: min(base * 2**(n-1) + U(0, jitter), cap)."""
    return wait_exponential_jitter(
        initial=options.backoff_base,
        max=options.backoff_cap,
        jitter=options.backoff_jitter,
    )


async def erase_external(
    client: httpx.AsyncClient,
    identifiers: Sequence[str],
    options: ExternalOptions,
    *,
    cancel_token: "CancellationToken | None" = None,
    sleep: SleepFunc = asyncio.sleep,
) -> ExternalOutcome:
    """Erase identifiers from the external service.

    Args:
        client: HTTP client (see open_http_client)
        identifiers: Deduplicated identifiers
        options: Batching, concurrency and retry configuration
        cancel_token: Checked before each batch is admitted
        sleep: Coroutine used for backoff delays

    Returns:
        ExternalOutcome with exactly one entry per identifier
    """
    batches = partition(list(identifiers), options.batch_size)
    semaphore = asyncio.Semaphore(options.concurrent_batches)
    outcome = ExternalOutcome(status=ExternalStatus.COMPLETED)

    logger.info(
        "external_erasure_started",
        identifiers=len(identifiers),
        batches=len(batches),
        concurrent_batches=options.concurrent_batches,
    )

    await asyncio.gather(
        *(
            _process_batch(
                client,
                options,
                index,
                len(batches),
                batch,
                semaphore,
                outcome,
                cancel_token,
                sleep,
            )
            for index, batch in enumerate(batches, start=1)
        )
    )

    # Report in input order regardless of completion order
    outcome.results = {identifier: outcome.results[identifier] for identifier in identifiers}
    if any(b.attempts == 0 for b in outcome.batches):
        outcome.status = ExternalStatus.CANCELLED

    logger.info(
        "external_erasure_completed",
        successful=outcome.successful,
        failed=outcome.failed,
        status=outcome.status.value,
    )
    return outcome


def simulate_external(identifiers: Sequence[str]) -> ExternalOutcome:
    """Dry-run outcome: every identifier ok, no network calls."""
    outcome = ExternalOutcome(status=ExternalStatus.SIMULATED)
    for identifier in identifiers:
        outcome.record(identifier, ok=True)
    logger.info("external_erasure_simulated", identifiers=len(identifiers))
    return outcome


async def _process_batch(
    client: httpx.AsyncClient,
    options: ExternalOptions,
    index: int,
    total: int,
    batch: Sequence[str],
    semaphore: asyncio.Semaphore,
    outcome: ExternalOutcome,
    cancel_token: "CancellationToken | None",
    sleep: SleepFunc,
) -> None:
    """Deliver one batch under the concurrency limit and record its outcome."""
    async with semaphore:
        if cancel_token is not None and cancel_token.is_cancelled:
            _record_batch(outcome, index, batch, attempts=0, error=CANCELLED_DETAIL)
            return

        logger.info("external_batch_started", batch=index, batches=total, size=len(batch))
        attempts = 0

        def _count_attempt(retry_state: RetryCallState) -> None:
            nonlocal attempts
            attempts = retry_state.attempt_number

        retrying = AsyncRetrying(
            stop=stop_after_attempt(options.max_attempts),
            wait=backoff_wait(options),
            retry=retry_if_exception_type(ExternalTransientError),
            before=_count_attempt,
            before_sleep=_log_retry(index, options.max_attempts),
            sleep=sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await _attempt_delivery(client, options, index, batch)
        except ExternalPermanentError as e:
            logger.error("external_batch_rejected", batch=index, status_code=e.status_code, detail=e.detail)
            _record_batch(outcome, index, batch, attempts, error=f"Non-retryable {e}")
            return
        except ExternalTransientError as e:
            logger.error("external_batch_retries_exhausted", batch=index, attempts=attempts, last_error=str(e))
            _record_batch(
                outcome,
                index,
                batch,
                attempts,
                error=f"Retries exhausted after {attempts} attempts: {e}",
            )
            return
        except Exception as e:
            # Unexpected failure stays confined to this batch
            log_exception(logger, e, "external_batch_crashed", batch=index)
            _record_batch(outcome, index, batch, attempts, error=f"{type(e).__name__}: {e}")
            return

        logger.info("external_batch_succeeded", batch=index, attempts=attempts)
        _record_batch(outcome, index, batch, attempts, error=None)


async def _attempt_delivery(
    client: httpx.AsyncClient,
    options: ExternalOptions,
    index: int,
    batch: Sequence[str],
) -> None:
    """One delivery attempt; failures are raised for the retry policy."""
    started = time.perf_counter()
    result = await send_batch(client, options, batch)
    duration_ms = (time.perf_counter() - started) * 1000

    match result:
        case Delivered(status_code=status_code):
            log_external_call(
                logger, SERVICE_NAME, "delete_users", duration_ms, True, batch=index, status_code=status_code
            )
        case PermanentFailure(status_code=status_code, detail=detail):
            log_external_call(
                logger, SERVICE_NAME, "delete_users", duration_ms, False, batch=index, status_code=status_code
            )
            raise ExternalPermanentError(detail, status_code=status_code)
        case TransientFailure(detail=detail, status_code=status_code):
            log_external_call(
                logger, SERVICE_NAME, "delete_users", duration_ms, False, batch=index, status_code=status_code
            )
            raise ExternalTransientError(detail, status_code=status_code)


def _log_retry(index: int, max_attempts: int) -> Callable[[RetryCallState], None]:
    """Build a before_sleep hook that logs the upcoming retry."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "external_batch_retrying",
            batch=index,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            delay_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(error) if error else None,
        )

    return _before_sleep


def _record_batch(
    outcome: ExternalOutcome,
    index: int,
    batch: Sequence[str],
    attempts: int,
    error: str | None,
) -> None:
    """Record the same result for every identifier in a batch."""
    for identifier in batch:
        outcome.record(identifier, ok=error is None, error=error)
    outcome.batches.append(
        BatchResult(index=index, size=len(batch), attempts=attempts, ok=error is None, error=error)
    )
