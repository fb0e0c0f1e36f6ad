from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from .announcer import Announcer
from .chain import ChainClient
from .config import PipelineConfig, Settings
from .enrichment import ConversionRateCache, IdentityResolver, TokenMetadataResolver
from .event_source import TRANSFER_TOPIC, LogSubscription
from .listings import ListingPoller
from .marketplace import MarketplaceClient, SaleMatcher
from .naming import NamingWatcher
from .pipeline import SalesPipeline
from .webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)


class BotService:
    """Owns the shared clients and every configured pipeline for one process."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.chain = ChainClient(settings.eth_rpc_url)
        self.marketplace = MarketplaceClient(settings.opensea_api_base, settings.opensea_api_key)
        self.rates = ConversionRateCache(
            settings.coinmarketcap_api_base, settings.coinmarketcap_api_key
        )
        self.identity = IdentityResolver(settings.identity_api_base)
        self.metadata = TokenMetadataResolver(
            settings.metadata_api_base, settings.image_url_template
        )
        self.notifier = WebhookNotifier(
            settings.webhook_urls, failure_pause=settings.delivery_failure_pause
        )
        self.announcer = Announcer(
            self.notifier,
            self.rates,
            self.identity,
            self.metadata,
            bot_username=settings.bot_username,
            name_blacklist=settings.name_blacklist,
        )
        self.pipelines = [self._build_pipeline(cfg) for cfg in settings.pipelines]
        self.listing_poller = (
            ListingPoller(settings.listing, self.marketplace, self.announcer)
            if settings.listing is not None
            else None
        )
        self.naming_watcher: NamingWatcher | None = None
        if settings.naming is not None:
            self.naming_watcher = NamingWatcher(settings.naming, self.announcer)
            self.naming_watcher.subscription = self._subscription(
                "naming", [settings.naming.contract_address], [self.naming_watcher.topic]
            )

    def _subscription(
        self,
        name: str,
        addresses: list[str],
        topics: list[Any],
    ) -> LogSubscription:
        s = self.settings
        return LogSubscription(
            s.eth_ws_url,
            addresses,
            topics,
            name=name,
            base_delay=s.ws_reconnect_base_delay,
            max_delay=s.ws_reconnect_max_delay,
            jitter=s.ws_reconnect_jitter,
            max_attempts=s.ws_max_reconnect_attempts,
            health_check_interval=s.ws_health_check_interval,
        )

    def _build_pipeline(self, cfg: PipelineConfig) -> SalesPipeline:
        matcher = SaleMatcher(self.marketplace, cfg.collection_slug, delay=cfg.matcher_delay)
        subscription = self._subscription(
            cfg.name, list(cfg.contract_addresses), [TRANSFER_TOPIC]
        )
        return SalesPipeline(cfg, self.chain, matcher, self.announcer, subscription)

    async def run(self) -> None:
        workers: list[tuple[str, Coroutine[Any, Any, None]]] = [
            (p.config.name, p.run()) for p in self.pipelines
        ]
        if self.listing_poller is not None:
            workers.append(("listings", self.listing_poller.run()))
        if self.naming_watcher is not None:
            workers.append(("naming", self.naming_watcher.run()))

        tasks = [asyncio.create_task(self._supervise(name, coro)) for name, coro in workers]
        health_task = asyncio.create_task(self._health_loop())

        try:
            # Workers that give up stay down; the health loop keeps reporting.
            await asyncio.gather(*tasks)
            await health_task
        finally:
            for task in (*tasks, health_task):
                task.cancel()
            await asyncio.gather(*tasks, health_task, return_exceptions=True)
            await self.close()

    async def close(self) -> None:
        await self.chain.close()
        await self.marketplace.close()
        await self.rates.close()
        await self.identity.close()
        await self.metadata.close()
        await self.notifier.close()

    @staticmethod
    async def _supervise(name: str, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Worker %s crashed", name)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_log_interval_seconds)
            for pipeline in self.pipelines:
                m = pipeline.metrics
                logger.info(
                    (
                        "health pipeline=%s transfers_seen=%d receipts_confirmed=%d "
                        "receipts_rejected=%d sales_matched=%d sales_unmatched=%d "
                        "announcements_sent=%d announcements_failed=%d "
                        "transfer_queue=%d sales_queue=%d"
                    ),
                    pipeline.config.name,
                    m.transfers_seen,
                    m.receipts_confirmed,
                    m.receipts_rejected,
                    m.sales_matched,
                    m.sales_unmatched,
                    m.announcements_sent,
                    m.announcements_failed,
                    len(pipeline.transfers),
                    len(pipeline.sales),
                )
            if self.listing_poller is not None:
                logger.info(
                    "health listings announced=%d processed=%d cooldowns=%d",
                    self.listing_poller.announced,
                    len(self.listing_poller.processed),
                    len(self.listing_poller.cooldowns),
                )
            if self.naming_watcher is not None:
                logger.info(
                    "health naming seen=%d announced=%d",
                    self.naming_watcher.seen,
                    self.naming_watcher.announced,
                )
