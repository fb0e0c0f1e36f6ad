from __future__ import annotations

import logging
from decimal import Decimal

from .enrichment import ConversionRateCache, IdentityResolver, TokenMetadataResolver
from .formatting import (
    build_tx_link,
    build_webhook_body,
    compose_name_message,
    compose_sale_message,
    is_name_blocked,
    label_link,
    opensea_asset_url,
    price_text,
)
from .marketplace import AGGREGATOR_LABEL, classify_marketplace
from .types import AnnouncementPayload, ListingFacts, NameEvent, SaleFacts
from .webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)

NATIVE_SYMBOLS = ("ETH", "WETH")
STABLE_SYMBOLS = ("USDC", "USDT", "DAI")


class Announcer:
    def __init__(
        self,
        notifier: WebhookNotifier,
        rates: ConversionRateCache,
        identity: IdentityResolver,
        metadata: TokenMetadataResolver,
        bot_username: str = "Sales Bot",
        name_blacklist: tuple[str, ...] = (),
    ) -> None:
        self.notifier = notifier
        self.rates = rates
        self.identity = identity
        self.metadata = metadata
        self.bot_username = bot_username
        self.name_blacklist = name_blacklist
        self.sent = 0
        self.suppressed = 0

    async def announce_sale(
        self,
        facts: SaleFacts,
        contract_address: str,
        collection_name: str,
        verb: str = "Adopted",
    ) -> bool:
        price = await self._price_text(facts.eth_price, facts.payment_token.symbol)
        if price is None:
            logger.warning("No ETH/USD rate, skipping announcement for token %s", facts.token_id)
            self.suppressed += 1
            return False

        meta = await self.metadata.resolve(facts.token_id)
        if is_name_blocked(meta.display_name, self.name_blacklist):
            logger.info("Blocked name on token %s, announcement suppressed", facts.token_id)
            self.suppressed += 1
            return False

        buyer_tag = await self.identity.resolve_tag(facts.buyer_address)
        buyer = label_link(buyer_tag, facts.buyer_address)
        market_label, market_url = classify_marketplace(
            facts.protocol_address, contract_address, facts.token_id
        )
        payload = AnnouncementPayload(
            title=f"{collection_name} #{facts.token_id} {verb}",
            body_text=compose_sale_message(
                collection_name, facts.token_id, meta.display_name, verb, buyer, price
            ),
            image_url=meta.image_url,
            marketplace_label=market_label,
            marketplace_url=market_url,
            explorer_url=facts.transaction_url or build_tx_link(facts.transaction_hash),
        )
        return await self._deliver(payload)

    async def announce_listing(
        self,
        listing: ListingFacts,
        contract_address: str,
        collection_name: str,
    ) -> bool:
        price = await self._price_text(listing.price, listing.payment_token.symbol)
        if price is None:
            logger.warning("No ETH/USD rate, skipping listing for token %s", listing.token_id)
            self.suppressed += 1
            return False

        meta = await self.metadata.resolve(listing.token_id)
        if is_name_blocked(meta.display_name, self.name_blacklist):
            logger.info("Blocked name on token %s, listing suppressed", listing.token_id)
            self.suppressed += 1
            return False

        seller_tag = await self.identity.resolve_tag(listing.seller_address)
        seller = label_link(seller_tag, listing.seller_address)
        contract = listing.contract_address or contract_address
        payload = AnnouncementPayload(
            title=f"{collection_name} #{listing.token_id} Listed",
            body_text=compose_sale_message(
                collection_name, listing.token_id, meta.display_name, "Listed", seller, price
            ),
            image_url=meta.image_url,
            marketplace_label=AGGREGATOR_LABEL,
            marketplace_url=opensea_asset_url(contract, listing.token_id),
            explorer_url=None,
        )
        return await self._deliver(payload)

    async def announce_name(self, event: NameEvent, collection_name: str) -> bool:
        if is_name_blocked(event.name, self.name_blacklist):
            logger.info("Blocked name on token %s, naming suppressed", event.token_id)
            self.suppressed += 1
            return False

        meta = await self.metadata.resolve(event.token_id)
        payload = AnnouncementPayload(
            title=f"{collection_name} #{event.token_id} Named",
            body_text=compose_name_message(collection_name, event.token_id, event.name, None),
            image_url=meta.image_url,
            marketplace_label=None,
            marketplace_url=None,
            explorer_url=build_tx_link(event.transaction_hash),
        )
        return await self._deliver(payload)

    async def _price_text(self, amount: Decimal, symbol: str) -> str | None:
        rate = await self.rates.get_rate()
        if rate is None:
            return None
        upper = symbol.upper()
        if upper in NATIVE_SYMBOLS:
            usd: Decimal | None = amount * rate
        elif upper in STABLE_SYMBOLS:
            usd = amount
        else:
            usd = None
        return price_text(amount, symbol, usd)

    async def _deliver(self, payload: AnnouncementPayload) -> bool:
        body = build_webhook_body(payload, self.bot_username)
        await self.notifier.send(body)
        self.sent += 1
        logger.info("Announcement sent: %s", payload.title)
        return True
