"""HTTP client for the market's order histogram endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import DEFAULT_BASE_URL, MarketDepthConfig
from .models import Side

logger = logging.getLogger(__name__)

HISTOGRAM_PATH = "/market/itemordershistogram"


class ExternalMarketClient:
    """Async client returning raw histogram bytes for one item.

    The endpoint serves both sides of the book in one document, so ``side``
    only affects logging; side selection happens during normalization.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        country: str = "KZ",
        language: str = "russian",
        currency: int = 37,
        user_agent: str = "Mozilla/5.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.country = country
        self.language = language
        self.currency = currency
        # Per-attempt deadlines are enforced by the fetcher, not by httpx.
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=None,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: MarketDepthConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> ExternalMarketClient:
        return cls(
            config.base_url,
            country=config.country,
            language=config.language,
            currency=config.currency,
            user_agent=config.user_agent,
            transport=transport,
        )

    def _params(self, external_id: str) -> dict[str, Any]:
        return {
            "country": self.country,
            "language": self.language,
            "currency": self.currency,
            "item_nameid": external_id,
            "norender": 1,
        }

    async def fetch_snapshot(self, external_id: str, side: Side) -> bytes:
        """Fetch the raw histogram document for an item.

        Raises:
            httpx.HTTPStatusError: On a non-success status.
            httpx.HTTPError: On transport failures.
        """
        logger.debug("Requesting %s histogram for item_nameid=%s", side.value, external_id)
        response = await self.client.get(
            HISTOGRAM_PATH,
            params=self._params(external_id),
            headers={"Connection": "close"},
        )
        response.raise_for_status()
        return response.content

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> ExternalMarketClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
