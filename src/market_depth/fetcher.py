"""Fetch one side of an item's order book with bounded retries.

Each attempt runs under its own deadline nested inside the caller's task, so
a per-attempt timeout is retried while cancelling the caller aborts the whole
call at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

import httpx

from .models import OrderRecord, Side, TrackedItem
from .normalizer import DEFAULT_MAX_LEVELS, normalize_snapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_BACKOFF_SECONDS = 1.0


class FetchError(Exception):
    """Base exception for histogram fetch failures."""


class FetchTimeout(FetchError):
    """Raised when a single attempt exceeds its deadline."""


class NetworkFailure(FetchError):
    """Raised on transport errors and non-success response statuses."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExhaustedRetries(FetchError):
    """Raised after the final attempt fails; carries the last error."""

    def __init__(self, message: str, last_error: Exception | None, attempts: int):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class SnapshotSource(Protocol):
    async def fetch_snapshot(self, external_id: str, side: Side) -> bytes: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MarketFetcher:
    """Retrying fetcher that turns raw histograms into order records."""

    def __init__(
        self,
        client: SnapshotSource,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        max_levels: int = DEFAULT_MAX_LEVELS,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.max_attempts = max(1, max_attempts)
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = backoff_seconds
        self.max_levels = max_levels
        self._clock = clock
        self._sleep = sleep

    async def fetch_raw(self, item: TrackedItem, side: Side) -> bytes:
        """Fetch raw histogram bytes, retrying transient failures.

        Backoff before attempt N+1 is ``N * backoff_seconds``.

        Raises:
            ExhaustedRetries: If every attempt failed.
            asyncio.CancelledError: If the calling task is cancelled.
        """
        last_error: FetchError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with asyncio.timeout(self.timeout_seconds):
                    return await self.client.fetch_snapshot(item.external_id, side)
            except (TimeoutError, httpx.TimeoutException):
                last_error = FetchTimeout(
                    f"{side.value} histogram for {item.external_id} timed out "
                    f"after {self.timeout_seconds:.0f}s"
                )
                logger.warning(
                    "[Attempt %d] %s request for %s (item_nameid=%s) timed out",
                    attempt,
                    side.value,
                    item.name,
                    item.external_id,
                )
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = NetworkFailure(
                    f"HTTP {status} for {item.external_id}", status_code=status
                )
                logger.warning(
                    "[Attempt %d] HTTP %d for %s (item_nameid=%s)",
                    attempt,
                    status,
                    item.name,
                    item.external_id,
                )
            except (httpx.HTTPError, OSError) as e:
                last_error = NetworkFailure(f"{type(e).__name__}: {e}")
                logger.warning(
                    "[Attempt %d] Network error for %s (item_nameid=%s): %s",
                    attempt,
                    item.name,
                    item.external_id,
                    e,
                )

            if attempt < self.max_attempts:
                await self._sleep(attempt * self.backoff_seconds)

        raise ExhaustedRetries(
            f"Failed to fetch {side.value} histogram for {item.external_id} "
            f"after {self.max_attempts} attempts",
            last_error=last_error,
            attempts=self.max_attempts,
        )

    async def fetch(self, item: TrackedItem, side: Side) -> list[OrderRecord]:
        """Fetch and normalize one side of an item's order book.

        An undecodable response body is logged and yields no orders.
        """
        raw = await self.fetch_raw(item, side)
        collected_at = self._clock()

        try:
            payload = json.loads(raw)
        except ValueError as e:
            logger.error(
                "Malformed %s histogram for %s (item_nameid=%s): %s",
                side.value,
                item.name,
                item.external_id,
                e,
            )
            return []

        orders = normalize_snapshot(
            payload,
            item_id=item.id,
            side=side,
            collected_at=collected_at,
            max_levels=self.max_levels,
        )

        if orders:
            logger.info(
                "Collected %d %s orders for %s (item_nameid=%s)",
                len(orders),
                side.value,
                item.name,
                item.external_id,
            )
        else:
            logger.warning(
                "Market returned 0 %s orders for %s (item_nameid=%s)",
                side.value,
                item.name,
                item.external_id,
            )
        return orders
