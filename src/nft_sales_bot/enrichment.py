from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import httpx

from .formatting import short_address
from .types import TokenMetadata

logger = logging.getLogger(__name__)

RATE_TTL_SECONDS = 60 * 60


class ConversionRateCache:
    """USD-per-ETH rate, refreshed at most once per TTL."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None,
        ttl: float = RATE_TTL_SECONDS,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.ttl = ttl
        self._clock = clock
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._lock = asyncio.Lock()
        self.rate: Decimal | None = None
        self.fetched_at: float | None = None

    async def close(self) -> None:
        await self._client.aclose()

    def _fresh(self) -> bool:
        if self.rate is None or self.fetched_at is None:
            return False
        return self._clock() - self.fetched_at < self.ttl

    async def get_rate(self) -> Decimal | None:
        if self._fresh():
            return self.rate

        async with self._lock:
            if self._fresh():
                return self.rate
            try:
                rate = await self._fetch()
            except Exception as exc:
                logger.warning("ETH/USD rate lookup failed: %s", exc)
                return None
            self.rate = rate
            self.fetched_at = self._clock()
            logger.info("ETH/USD rate refreshed: %s", rate)
            return rate

    async def _fetch(self) -> Decimal:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-CMC_PRO_API_KEY"] = self.api_key
        resp = await self._client.get(
            f"{self.api_base}/v1/cryptocurrency/quotes/latest",
            params={"symbol": "ETH", "convert": "USD"},
            headers=headers,
        )
        resp.raise_for_status()
        data = resp.json()
        price = data["data"]["ETH"]["quote"]["USD"]["price"]
        return Decimal(str(price))


class IdentityResolver:
    def __init__(
        self,
        api_base: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        max_entries: int = 2000,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.max_entries = max_entries
        self._client = client or httpx.AsyncClient(timeout=timeout)
        # Only answered lookups are cached; failures retry on the next call.
        self._cache: OrderedDict[str, str | None] = OrderedDict()

    async def close(self) -> None:
        await self._client.aclose()

    async def resolve_tag(self, address: str | None) -> str:
        if not address:
            return short_address(address)
        address = address.lower()
        if address in self._cache:
            self._cache.move_to_end(address)
            return self._cache[address] or short_address(address)

        try:
            name = await self._lookup(address)
        except Exception as exc:
            logger.debug("Identity lookup failed for %s: %s", address, exc)
            return short_address(address)

        self._cache[address] = name
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return name or short_address(address)

    async def _lookup(self, address: str) -> str | None:
        resp = await self._client.get(f"{self.api_base}/{address}")
        resp.raise_for_status()
        data = resp.json()
        name = data.get("name") if isinstance(data, dict) else None
        if isinstance(name, str) and name.strip():
            return name.strip()
        return None


class TokenMetadataResolver:
    """Display name, naming flag, classification and image for a token."""

    def __init__(
        self,
        api_base: str,
        image_url_template: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.image_url_template = image_url_template
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def resolve(self, token_id: str) -> TokenMetadata:
        lookup_id = token_id[2:] if token_id.startswith("0x") else token_id
        try:
            resp = await self._client.get(f"{self.api_base}/traits/{lookup_id}")
            resp.raise_for_status()
            data = resp.json()
        except Exception as exc:
            logger.warning("Metadata lookup failed for token %s: %s", token_id, exc)
            return self.fallback(token_id)

        if not isinstance(data, dict):
            return self.fallback(token_id)
        return self.from_payload(token_id, data)

    def image_url(self, token_id: str, data: dict[str, Any] | None = None) -> str | None:
        if self.image_url_template:
            return self.image_url_template.format(token_id=token_id)
        if data:
            image = data.get("image") or data.get("image_url")
            if isinstance(image, str) and image:
                return image
        return None

    def fallback(self, token_id: str) -> TokenMetadata:
        return TokenMetadata(
            token_id=token_id,
            display_name=f"#{token_id}",
            is_named=False,
            classification=None,
            image_url=self.image_url(token_id),
        )

    def from_payload(self, token_id: str, data: dict[str, Any]) -> TokenMetadata:
        # Two shapes are served: a "details" object, or an ERC-721 style
        # "attributes" list with the name at the top level.
        details = data.get("details")
        traits = _traits(data.get("attributes"))

        if isinstance(details, dict):
            name = _text(details.get("name"))
            is_named = bool(name) or _truthy(details.get("isNamed"))
            ident = _text(details.get("catId") or details.get("id"))
            classification = _text(details.get("classification"))
        else:
            is_named = _truthy(traits.get("isnamed"))
            name = _text(data.get("name")) if is_named else None
            ident = next((v for k, v in traits.items() if k.endswith(" id")), None)
            classification = traits.get("classification")

        display = name or ident or f"#{token_id}"
        return TokenMetadata(
            token_id=token_id,
            display_name=display,
            is_named=bool(name) and is_named,
            classification=classification,
            image_url=self.image_url(token_id, data),
        )


def _traits(raw: Any) -> dict[str, str]:
    out: dict[str, str] = {}
    if not isinstance(raw, list):
        return out
    for trait in raw:
        if not isinstance(trait, dict):
            continue
        key = _text(trait.get("trait_type"))
        value = _text(trait.get("value"))
        if key and value:
            out[key.lower()] = value
    return out


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("yes", "true", "1")
