from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any

import httpx

from .formatting import blur_asset_url, build_tx_link, opensea_asset_url
from .types import ListingFacts, PaymentToken, SaleFacts

logger = logging.getLogger(__name__)

WETH_ADDRESS = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"

PEER_TO_PEER_LABEL = "Blur"
AGGREGATOR_LABEL = "OpenSea"


class MarketplaceClient:
    """OpenSea v2 collection events API."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-KEY"] = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def close(self) -> None:
        await self._client.aclose()

    async def collection_events(
        self,
        slug: str,
        event_type: str,
        limit: int = 50,
        after: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"event_type": event_type, "limit": limit}
        if after is not None:
            params["after"] = int(after)
        resp = await self._client.get(
            f"{self.api_base}/events/collection/{slug}",
            params=params,
            headers=self._headers,
        )
        resp.raise_for_status()
        data = resp.json()
        events = data.get("asset_events") if isinstance(data, dict) else None
        if not isinstance(events, list):
            raise ValueError(f"Unexpected events payload for {slug}: {str(data)[:200]}")
        return [e for e in events if isinstance(e, dict)]

    async def listings(self, slug: str, after: int | None, limit: int = 50) -> list[ListingFacts]:
        events = await self.collection_events(slug, "listing", limit=limit, after=after)
        out: list[ListingFacts] = []
        for event in events:
            listing = parse_listing_event(event)
            if listing is not None:
                out.append(listing)
        return out


class SaleMatcher:
    """Correlates a confirmed transfer with the marketplace's sale record."""

    def __init__(
        self,
        marketplace: MarketplaceClient,
        collection_slug: str,
        delay: float = 10.0,
        window: int = 50,
    ) -> None:
        self.marketplace = marketplace
        self.collection_slug = collection_slug
        self.delay = delay
        self.window = window

    async def find_sale(
        self,
        token_id: str,
        seller_address: str,
        contract_address: str | None = None,
    ) -> SaleFacts | None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        try:
            events = await self.marketplace.collection_events(
                self.collection_slug, "sale", limit=self.window
            )
        except Exception as exc:
            logger.warning("Sale lookup failed for token %s: %s", token_id, exc)
            return None

        return match_sale(events, token_id, seller_address, contract_address)


def match_sale(
    events: list[dict[str, Any]],
    token_id: str,
    seller_address: str,
    contract_address: str | None = None,
) -> SaleFacts | None:
    # Latest event_timestamp wins; ties keep API order.
    best: SaleFacts | None = None
    for event in events:
        facts = _sale_from_event(event, token_id, seller_address, contract_address)
        if facts is None:
            continue
        if best is None or facts.event_timestamp > best.event_timestamp:
            best = facts

    if best is None:
        logger.info("No sale event found for token %s with seller %s", token_id, seller_address)
    return best


def _sale_from_event(
    event: dict[str, Any],
    token_id: str,
    seller_address: str,
    contract_address: str | None,
) -> SaleFacts | None:
    nft = event.get("nft")
    if not isinstance(nft, dict):
        return None
    if str(nft.get("identifier", "")) != str(token_id):
        return None
    if contract_address and nft.get("contract"):
        if str(nft["contract"]).lower() != contract_address.lower():
            return None

    seller = event.get("seller")
    buyer = event.get("buyer")
    if not isinstance(seller, str) or seller.lower() != seller_address.lower():
        return None
    if not buyer or not event.get("transaction"):
        return None

    payment = parse_payment(event.get("payment"))
    if payment is None:
        return None

    tx_hash = str(event["transaction"])
    return SaleFacts(
        token_id=str(token_id),
        eth_price=to_decimal_amount(payment.quantity, payment.decimals),
        transaction_hash=tx_hash,
        transaction_url=build_tx_link(tx_hash) or "",
        payment_token=payment,
        buyer_address=str(buyer).lower(),
        seller_address=seller.lower(),
        protocol_address=_string_or_none(event.get("protocol_address")),
        event_timestamp=_int_or_zero(event.get("event_timestamp")),
    )


def parse_listing_event(event: dict[str, Any]) -> ListingFacts | None:
    asset = event.get("asset") or event.get("nft")
    if not isinstance(asset, dict):
        return None
    order_hash = _string_or_none(event.get("order_hash"))
    seller = _string_or_none(event.get("maker") or event.get("seller"))
    token_id = _string_or_none(asset.get("identifier"))
    payment = parse_payment(event.get("payment"))
    if not order_hash or not seller or token_id is None or payment is None:
        return None

    return ListingFacts(
        order_hash=order_hash,
        token_id=token_id,
        seller_address=seller.lower(),
        price=to_decimal_amount(payment.quantity, payment.decimals),
        payment_token=payment,
        event_timestamp=_int_or_zero(event.get("event_timestamp")),
        contract_address=(_string_or_none(asset.get("contract")) or "").lower() or None,
    )


def parse_payment(raw: Any) -> PaymentToken | None:
    if not isinstance(raw, dict):
        return None
    try:
        quantity = int(str(raw.get("quantity")))
        decimals = int(raw.get("decimals", 18))
    except (TypeError, ValueError):
        return None

    token_address = _string_or_none(raw.get("token_address"))
    symbol = _string_or_none(raw.get("symbol"))
    if symbol is None:
        is_weth = token_address is not None and token_address.lower() == WETH_ADDRESS
        symbol = "WETH" if is_weth else "ETH"

    return PaymentToken(
        symbol=symbol,
        quantity=quantity,
        decimals=decimals,
        token_address=token_address.lower() if token_address else None,
    )


def to_decimal_amount(quantity: int, decimals: int) -> Decimal:
    """Fixed-point integer to decimal, honouring the token's own precision."""
    return Decimal(quantity).scaleb(-decimals).normalize()


def classify_marketplace(
    protocol_address: str | None,
    contract_address: str,
    token_id: str,
) -> tuple[str, str]:
    # No protocol address means a peer-to-peer sale.
    if not protocol_address or not protocol_address.strip():
        return PEER_TO_PEER_LABEL, blur_asset_url(contract_address, token_id)
    return AGGREGATOR_LABEL, opensea_asset_url(contract_address, token_id)


def _string_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_zero(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0
