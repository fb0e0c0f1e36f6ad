from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class TransferRecord:
    token_id: str
    transaction_hash: str
    seller_address: str
    contract_address: str


# A transfer that passed receipt confirmation and waits on the sales queue.
SaleCandidate = TransferRecord


@dataclass(frozen=True)
class Receipt:
    transaction_hash: str
    status: bool
    block_number: int | None


@dataclass(frozen=True)
class PaymentToken:
    symbol: str
    quantity: int
    decimals: int
    token_address: str | None


@dataclass(frozen=True)
class SaleFacts:
    token_id: str
    eth_price: Decimal
    transaction_hash: str
    transaction_url: str
    payment_token: PaymentToken
    buyer_address: str
    seller_address: str
    protocol_address: str | None
    event_timestamp: int


@dataclass(frozen=True)
class ListingFacts:
    order_hash: str
    token_id: str
    seller_address: str
    price: Decimal
    payment_token: PaymentToken
    event_timestamp: int
    contract_address: str | None


@dataclass(frozen=True)
class NameEvent:
    token_id: str
    name: str
    transaction_hash: str
    contract_address: str


@dataclass(frozen=True)
class TokenMetadata:
    token_id: str
    display_name: str
    is_named: bool
    classification: str | None
    image_url: str | None


@dataclass(frozen=True)
class AnnouncementPayload:
    title: str
    body_text: str
    image_url: str | None
    marketplace_label: str | None
    marketplace_url: str | None
    explorer_url: str | None
