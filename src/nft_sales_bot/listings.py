from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from .announcer import Announcer
from .config import ListingConfig
from .dedupe import BoundedSeenSet, CooldownTable
from .errors import DeliveryError
from .marketplace import MarketplaceClient
from .types import ListingFacts

logger = logging.getLogger(__name__)


class ListingPoller:
    def __init__(
        self,
        config: ListingConfig,
        marketplace: MarketplaceClient,
        announcer: Announcer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.marketplace = marketplace
        self.announcer = announcer
        self._clock = clock
        self.processed = BoundedSeenSet(config.max_processed)
        self.cooldowns = CooldownTable(
            config.cooldown_seconds, max_entries=config.max_cooldown_entries, clock=clock
        )
        self.last_seen: int | None = None
        self.announced = 0

    async def run(self) -> None:
        logger.info(
            "Polling listings for %s every %.0fs",
            self.config.collection_slug,
            self.config.poll_interval,
        )
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Listing poll failed for %s: %s", self.config.collection_slug, exc)
            await asyncio.sleep(self.config.poll_interval)

    async def poll_once(self) -> int:
        initial = self.last_seen is None
        now = int(self._clock())
        if self.last_seen is None:
            after = now - self.config.initial_window_seconds
        else:
            after = self.last_seen

        listings = await self.marketplace.listings(
            self.config.collection_slug, after=after, limit=self.config.fetch_limit
        )
        fresh = self._select(listings, after, initial)
        if listings:
            newest = max(item.event_timestamp for item in listings)
            self.last_seen = max(newest, self.last_seen or 0)
        elif initial:
            self.last_seen = now

        sent = 0
        for listing in fresh:
            if await self._handle(listing):
                sent += 1
        return sent

    def _select(
        self,
        listings: list[ListingFacts],
        after: int,
        initial: bool,
    ) -> list[ListingFacts]:
        if initial:
            candidates = [item for item in listings if item.event_timestamp >= after]
            candidates.sort(key=lambda item: item.event_timestamp, reverse=True)
            candidates = candidates[: self.config.initial_max]
        else:
            candidates = [item for item in listings if item.event_timestamp > after]
        # Oldest first so announcements read chronologically.
        return sorted(candidates, key=lambda item: item.event_timestamp)

    async def _handle(self, listing: ListingFacts) -> bool:
        if not self.processed.add(listing.order_hash):
            return False

        key = (listing.seller_address, listing.token_id)
        if self.cooldowns.is_cooling(key):
            logger.info(
                "Listing for token %s by %s is in cooldown, skipping",
                listing.token_id,
                listing.seller_address,
            )
            return False

        try:
            sent = await self.announcer.announce_listing(
                listing, self.config.contract_address, self.config.collection_name
            )
        except DeliveryError as exc:
            logger.error("Listing announcement for token %s: %s", listing.token_id, exc)
            return False

        if sent:
            self.cooldowns.mark(key)
            self.announced += 1
        return sent
