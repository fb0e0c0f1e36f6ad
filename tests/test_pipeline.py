import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from nft_sales_bot import pipeline as pipeline_module
from nft_sales_bot.announcer import Announcer
from nft_sales_bot.chain import ChainClient
from nft_sales_bot.config import PipelineConfig
from nft_sales_bot.enrichment import ConversionRateCache, IdentityResolver, TokenMetadataResolver
from nft_sales_bot.errors import DeliveryError, EventSourceExhausted
from nft_sales_bot.event_source import TRANSFER_TOPIC
from nft_sales_bot.marketplace import MarketplaceClient, SaleMatcher
from nft_sales_bot.pipeline import SalesPipeline
from nft_sales_bot.types import PaymentToken, Receipt, SaleFacts, TransferRecord
from nft_sales_bot.webhook_notifier import WebhookNotifier

CONTRACT = "0x" + "cc" * 20
SELLER = "0x" + "aa" * 20
BUYER = "0x" + "bb" * 20


def _config() -> PipelineConfig:
    return PipelineConfig(
        name="cats",
        collection_name="Cats",
        collection_slug="cats",
        contract_addresses=(CONTRACT,),
        transfer_settle_delay=0,
        marketplace_index_delay=0,
        matcher_delay=0,
        announcement_pacing_delay=0,
    )


def _record(token_id: str = "42") -> TransferRecord:
    return TransferRecord(
        token_id=token_id,
        transaction_hash="0xfeed",
        seller_address=SELLER,
        contract_address=CONTRACT,
    )


def _facts(token_id: str = "42") -> SaleFacts:
    return SaleFacts(
        token_id=token_id,
        eth_price=Decimal("2"),
        transaction_hash="0xfeed",
        transaction_url="https://etherscan.io/tx/0xfeed",
        payment_token=PaymentToken("ETH", 2 * 10**18, 18, None),
        buyer_address=BUYER,
        seller_address=SELLER,
        protocol_address=None,
        event_timestamp=1700000000,
    )


class DummyChain:
    def __init__(self, status: bool | None) -> None:
        self.status = status
        self.lookups = []

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        self.lookups.append(tx_hash)
        if self.status is None:
            return None
        return Receipt(tx_hash, self.status, 1)


class DummyMatcher:
    def __init__(self, facts: SaleFacts | None) -> None:
        self.facts = facts
        self.calls = []

    async def find_sale(self, token_id: str, seller: str, contract: str | None = None):
        self.calls.append((token_id, seller, contract))
        return self.facts


class DummyAnnouncer:
    def __init__(self, error: Exception | None = None) -> None:
        self.sales = []
        self.error = error

    async def announce_sale(self, facts, contract_address, collection_name, verb="Adopted") -> bool:
        if self.error is not None:
            raise self.error
        self.sales.append((facts, contract_address, collection_name, verb))
        return True


class DummySubscription:
    def __init__(self, logs: list[dict]) -> None:
        self._logs = logs

    async def logs(self):
        for log in self._logs:
            yield log
        raise EventSourceExhausted("gone")


def _drain(pipeline: SalesPipeline, records: list[TransferRecord]) -> None:
    async def scenario() -> None:
        for record in records:
            pipeline.ingest(record)
        await pipeline.transfers.wait_idle()
        await pipeline.sales.wait_idle()

    asyncio.run(scenario())


def test_failed_receipt_never_reaches_matcher() -> None:
    matcher = DummyMatcher(_facts())
    announcer = DummyAnnouncer()
    pipeline = SalesPipeline(_config(), DummyChain(False), matcher, announcer)

    _drain(pipeline, [_record()])

    assert matcher.calls == []
    assert announcer.sales == []
    assert pipeline.metrics.receipts_rejected == 1


def test_missing_receipt_is_dropped() -> None:
    matcher = DummyMatcher(_facts())
    pipeline = SalesPipeline(_config(), DummyChain(None), matcher, DummyAnnouncer())
    _drain(pipeline, [_record()])
    assert matcher.calls == []


def test_unmatched_sale_is_not_announced() -> None:
    matcher = DummyMatcher(None)
    announcer = DummyAnnouncer()
    pipeline = SalesPipeline(_config(), DummyChain(True), matcher, announcer)

    _drain(pipeline, [_record()])

    assert matcher.calls == [("42", SELLER, CONTRACT)]
    assert announcer.sales == []
    assert pipeline.metrics.sales_unmatched == 1


def test_matched_sale_is_announced_once() -> None:
    announcer = DummyAnnouncer()
    pipeline = SalesPipeline(_config(), DummyChain(True), DummyMatcher(_facts()), announcer)

    _drain(pipeline, [_record()])

    assert len(announcer.sales) == 1
    facts, contract, collection, verb = announcer.sales[0]
    assert facts.token_id == "42"
    assert contract == CONTRACT
    assert (collection, verb) == ("Cats", "Adopted")
    assert pipeline.metrics.announcements_sent == 1


def test_delivery_failure_is_counted_and_drain_continues() -> None:
    announcer = DummyAnnouncer(error=DeliveryError(["webhook[0]"]))
    pipeline = SalesPipeline(_config(), DummyChain(True), DummyMatcher(_facts()), announcer)

    _drain(pipeline, [_record("1"), _record("2")])

    assert pipeline.metrics.announcements_failed == 2
    assert pipeline.sales.processed == 2


class SuppressingAnnouncer:
    async def announce_sale(self, facts, contract_address, collection_name, verb="Adopted") -> bool:
        return False


def _paced_config() -> PipelineConfig:
    return PipelineConfig(
        name="cats",
        collection_name="Cats",
        collection_slug="cats",
        contract_addresses=(CONTRACT,),
        transfer_settle_delay=0,
        marketplace_index_delay=0,
        matcher_delay=0,
        announcement_pacing_delay=7,
    )


def test_pacing_follows_every_matched_sale(monkeypatch: pytest.MonkeyPatch) -> None:
    pauses = []

    async def record_pause(seconds: float) -> None:
        pauses.append(seconds)

    monkeypatch.setattr(pipeline_module, "_pause", record_pause)
    announcers = [
        DummyAnnouncer(),
        DummyAnnouncer(error=DeliveryError(["webhook[0]"])),
        SuppressingAnnouncer(),
    ]
    for announcer in announcers:
        pipeline = SalesPipeline(
            _paced_config(), DummyChain(True), DummyMatcher(_facts()), announcer
        )
        _drain(pipeline, [_record()])

    assert pauses.count(7) == 3


def test_unmatched_sale_is_not_paced(monkeypatch: pytest.MonkeyPatch) -> None:
    pauses = []

    async def record_pause(seconds: float) -> None:
        pauses.append(seconds)

    monkeypatch.setattr(pipeline_module, "_pause", record_pause)
    pipeline = SalesPipeline(
        _paced_config(), DummyChain(True), DummyMatcher(None), DummyAnnouncer()
    )
    _drain(pipeline, [_record()])

    assert 7 not in pauses


def test_run_filters_contracts_and_finishes_work_after_exhaustion() -> None:
    def log(contract: str) -> dict:
        return {
            "address": contract,
            "topics": [
                TRANSFER_TOPIC,
                "0x" + SELLER[2:].rjust(64, "0"),
                "0x" + BUYER[2:].rjust(64, "0"),
                "0x" + hex(42)[2:].rjust(64, "0"),
            ],
            "data": "0x",
            "transactionHash": "0xfeed",
        }

    announcer = DummyAnnouncer()
    subscription = DummySubscription([log(CONTRACT), log("0x" + "dd" * 20)])
    pipeline = SalesPipeline(
        _config(), DummyChain(True), DummyMatcher(_facts()), announcer, subscription
    )

    asyncio.run(pipeline.run())

    assert pipeline.metrics.transfers_seen == 1
    assert len(announcer.sales) == 1


def test_end_to_end_sale_announcement() -> None:
    posted = []
    sale_event = {
        "event_type": "sale",
        "nft": {"identifier": "42", "contract": CONTRACT},
        "seller": SELLER,
        "buyer": BUYER,
        "transaction": "0xfeed",
        "payment": {"quantity": "2000000000000000000", "decimals": 18, "symbol": "ETH"},
        "protocol_address": "",
        "event_timestamp": 1700000000,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "rpc.test":
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "result": {"status": "0x1"}}
            )
        if host == "opensea.test":
            return httpx.Response(200, json={"asset_events": [sale_event]})
        if host == "cmc.test":
            return httpx.Response(
                200, json={"data": {"ETH": {"quote": {"USD": {"price": 1500}}}}}
            )
        if host == "hooks.test":
            posted.append(json.loads(request.content))
            return httpx.Response(204)
        return httpx.Response(404)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    announcer = Announcer(
        WebhookNotifier(["https://hooks.test/1"], retries=1, failure_pause=0, client=http),
        ConversionRateCache("https://cmc.test", "key", client=http),
        IdentityResolver("https://ens.test", client=http),
        TokenMetadataResolver("https://meta.test", client=http),
    )
    matcher = SaleMatcher(
        MarketplaceClient("https://opensea.test/api/v2", "key", client=http), "cats", delay=0
    )
    pipeline = SalesPipeline(
        _config(), ChainClient("https://rpc.test", client=http), matcher, announcer
    )

    _drain(pipeline, [_record()])

    assert len(posted) == 1
    embed = posted[0]["embeds"][0]
    assert "2.000 ETH" in embed["description"]
    assert "$3,000.00" in embed["description"]
    assert embed["fields"][0]["value"].startswith("[Blur]")
    assert embed["url"] == f"https://blur.io/asset/{CONTRACT}/42"
    assert pipeline.metrics.announcements_sent == 1
