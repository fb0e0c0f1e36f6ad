from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .announcer import Announcer
from .chain import ChainClient
from .config import PipelineConfig
from .errors import DeliveryError, EventSourceExhausted
from .event_source import LogSubscription, parse_transfer_log
from .marketplace import SaleMatcher
from .types import SaleCandidate, TransferRecord
from .work_queue import DrainQueue

logger = logging.getLogger(__name__)


@dataclass
class PipelineMetrics:
    transfers_seen: int = 0
    receipts_confirmed: int = 0
    receipts_rejected: int = 0
    sales_matched: int = 0
    sales_unmatched: int = 0
    announcements_sent: int = 0
    announcements_failed: int = 0


class SalesPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        chain: ChainClient,
        matcher: SaleMatcher,
        announcer: Announcer,
        subscription: LogSubscription | None = None,
    ) -> None:
        self.config = config
        self.chain = chain
        self.matcher = matcher
        self.announcer = announcer
        self.subscription = subscription
        self.metrics = PipelineMetrics()
        self.transfers: DrainQueue[TransferRecord] = DrainQueue(
            f"{config.name}-transfers", self._confirm_transfer
        )
        self.sales: DrainQueue[SaleCandidate] = DrainQueue(
            f"{config.name}-sales", self._process_sale
        )

    async def run(self) -> None:
        if self.subscription is None:
            raise RuntimeError(f"{self.config.name}: no log subscription configured")

        logger.info(
            "[%s] Watching %s for transfers",
            self.config.name,
            ", ".join(self.config.contract_addresses),
        )
        try:
            async for log in self.subscription.logs():
                record = parse_transfer_log(log)
                if record is None:
                    continue
                if record.contract_address not in self.config.contract_addresses:
                    continue
                self.ingest(record)
        except EventSourceExhausted:
            logger.critical(
                "[%s] Event source exhausted; no new transfers will be seen until restart",
                self.config.name,
            )
            await self.transfers.wait_idle()
            await self.sales.wait_idle()
        finally:
            await self.stop()

    def ingest(self, record: TransferRecord) -> None:
        self.metrics.transfers_seen += 1
        logger.info(
            "[%s] Transfer token=%s tx=%s from=%s",
            self.config.name,
            record.token_id,
            record.transaction_hash,
            record.seller_address,
        )
        self.transfers.push(record)

    async def stop(self) -> None:
        await self.transfers.stop()
        await self.sales.stop()

    async def _confirm_transfer(self, record: TransferRecord) -> None:
        await _pause(self.config.transfer_settle_delay)

        try:
            receipt = await self.chain.get_receipt(record.transaction_hash)
        except Exception as exc:
            logger.error(
                "[%s] Receipt lookup failed for %s: %s",
                self.config.name,
                record.transaction_hash,
                exc,
            )
            self.metrics.receipts_rejected += 1
            return

        if receipt is None or not receipt.status:
            logger.warning(
                "[%s] Failed transaction or receipt not available for %s",
                self.config.name,
                record.transaction_hash,
            )
            self.metrics.receipts_rejected += 1
            return

        self.metrics.receipts_confirmed += 1
        self.sales.push(record)

    async def _process_sale(self, candidate: SaleCandidate) -> None:
        await _pause(self.config.marketplace_index_delay)

        facts = await self.matcher.find_sale(
            candidate.token_id, candidate.seller_address, candidate.contract_address
        )
        if facts is None:
            logger.info(
                "[%s] Token %s dropped: no matching marketplace sale",
                self.config.name,
                candidate.token_id,
            )
            self.metrics.sales_unmatched += 1
            return

        self.metrics.sales_matched += 1
        try:
            sent = await self.announcer.announce_sale(
                facts,
                candidate.contract_address,
                self.config.collection_name,
                self.config.sale_verb,
            )
        except DeliveryError as exc:
            self.metrics.announcements_failed += 1
            logger.error(
                "[%s] Announcement for token %s: %s", self.config.name, facts.token_id, exc
            )
        else:
            if sent:
                self.metrics.announcements_sent += 1
        await _pause(self.config.announcement_pacing_delay)


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)
