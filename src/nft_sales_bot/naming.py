from __future__ import annotations

import logging

from .announcer import Announcer
from .config import NamingConfig
from .errors import DeliveryError, EventSourceExhausted
from .event_source import LogSubscription, event_topic, parse_name_log
from .types import NameEvent

logger = logging.getLogger(__name__)


class NamingWatcher:
    """Announces naming events as they arrive; no confirmation stage."""

    def __init__(
        self,
        config: NamingConfig,
        announcer: Announcer,
        subscription: LogSubscription | None = None,
    ) -> None:
        self.config = config
        self.announcer = announcer
        self.subscription = subscription
        self.topic = event_topic(config.event_signature)
        self.seen = 0
        self.announced = 0

    async def run(self) -> None:
        if self.subscription is None:
            raise RuntimeError("naming watcher has no log subscription configured")
        try:
            async for log in self.subscription.logs():
                try:
                    event = parse_name_log(log, self.topic, self.config.token_id_bytes)
                except Exception:
                    logger.exception("Undecodable naming log in tx %s", log.get("transactionHash"))
                    continue
                if event is not None:
                    await self.handle(event)
        except EventSourceExhausted:
            logger.critical("Naming event source exhausted; restart required")

    async def handle(self, event: NameEvent) -> None:
        self.seen += 1
        logger.info(
            "Name event token=%s name=%r tx=%s", event.token_id, event.name, event.transaction_hash
        )
        try:
            if await self.announcer.announce_name(event, self.config.collection_name):
                self.announced += 1
        except DeliveryError as exc:
            logger.error("Naming announcement for token %s: %s", event.token_id, exc)
        except Exception:
            logger.exception("Naming announcement for token %s crashed", event.token_id)
