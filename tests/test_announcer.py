import asyncio
from decimal import Decimal

from nft_sales_bot.announcer import Announcer
from nft_sales_bot.types import ListingFacts, NameEvent, PaymentToken, SaleFacts, TokenMetadata

CONTRACT = "0x" + "cc" * 20
BUYER = "0x" + "bb" * 20


class DummyNotifier:
    def __init__(self) -> None:
        self.bodies = []

    async def send(self, body: dict) -> int:
        self.bodies.append(body)
        return 1


class DummyRates:
    def __init__(self, rate: Decimal | None) -> None:
        self.rate = rate

    async def get_rate(self) -> Decimal | None:
        return self.rate


class DummyIdentity:
    async def resolve_tag(self, address: str | None) -> str:
        return "alice.eth"


class DummyMetadata:
    def __init__(self, display_name: str = "#42") -> None:
        self.display_name = display_name

    async def resolve(self, token_id: str) -> TokenMetadata:
        image = f"https://img.test/{token_id}"
        return TokenMetadata(token_id, self.display_name, False, None, image)


def _announcer(rate: Decimal | None = Decimal("2000"), display_name: str = "#42"):
    notifier = DummyNotifier()
    announcer = Announcer(
        notifier,
        DummyRates(rate),
        DummyIdentity(),
        DummyMetadata(display_name),
        bot_username="Cat Bot",
        name_blacklist=("rude",),
    )
    return announcer, notifier


def _sale(symbol: str = "ETH", quantity: int = 10**18, decimals: int = 18) -> SaleFacts:
    return SaleFacts(
        token_id="42",
        eth_price=Decimal(quantity).scaleb(-decimals),
        transaction_hash="0xfeed",
        transaction_url="https://etherscan.io/tx/0xfeed",
        payment_token=PaymentToken(symbol, quantity, decimals, None),
        buyer_address=BUYER,
        seller_address="0x" + "aa" * 20,
        protocol_address="0xprotocol",
        event_timestamp=1,
    )


def test_sale_announcement_body() -> None:
    announcer, notifier = _announcer()

    assert asyncio.run(announcer.announce_sale(_sale(), CONTRACT, "Cats")) is True

    body = notifier.bodies[0]
    embed = body["embeds"][0]
    assert body["username"] == "Cat Bot"
    assert embed["title"] == "Cats #42 Adopted"
    assert "1.000 ETH ($2,000.00)" in embed["description"]
    assert "[alice.eth](https://etherscan.io/address/" in embed["description"]
    assert embed["fields"][0]["value"].startswith("[OpenSea]")
    assert embed["image"]["url"] == "https://img.test/42"


def test_stablecoin_price_is_not_converted() -> None:
    announcer, notifier = _announcer()
    asyncio.run(announcer.announce_sale(_sale("USDC", 2500 * 10**6, 6), CONTRACT, "Cats"))
    assert "2500.000 USDC ($2,500.00)" in notifier.bodies[0]["embeds"][0]["description"]


def test_missing_rate_aborts_announcement() -> None:
    announcer, notifier = _announcer(rate=None)
    assert asyncio.run(announcer.announce_sale(_sale(), CONTRACT, "Cats")) is False
    assert notifier.bodies == []
    assert announcer.suppressed == 1


def test_blocked_display_name_is_suppressed() -> None:
    announcer, notifier = _announcer(display_name="Rude Cat")
    assert asyncio.run(announcer.announce_sale(_sale(), CONTRACT, "Cats")) is False
    assert notifier.bodies == []


def test_listing_announcement_links_aggregator() -> None:
    announcer, notifier = _announcer()
    listing = ListingFacts(
        order_hash="0xorder",
        token_id="42",
        seller_address="0x" + "aa" * 20,
        price=Decimal("3"),
        payment_token=PaymentToken("ETH", 3 * 10**18, 18, None),
        event_timestamp=1,
        contract_address=None,
    )

    assert asyncio.run(announcer.announce_listing(listing, CONTRACT, "Cats")) is True

    embed = notifier.bodies[0]["embeds"][0]
    assert embed["title"] == "Cats #42 Listed"
    assert embed["url"] == f"https://opensea.io/assets/ethereum/{CONTRACT}/42"


def test_name_announcement_respects_blacklist() -> None:
    announcer, notifier = _announcer()

    async def scenario() -> list[bool]:
        ok = await announcer.announce_name(NameEvent("42", "Whiskers", "0x1", CONTRACT), "Cats")
        blocked = await announcer.announce_name(NameEvent("43", "rude", "0x2", CONTRACT), "Cats")
        return [ok, blocked]

    assert asyncio.run(scenario()) == [True, False]
    assert len(notifier.bodies) == 1
    assert "**Whiskers**" in notifier.bodies[0]["embeds"][0]["description"]
