from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .types import AnnouncementPayload

EXPLORER_BASE = "https://etherscan.io"
OPENSEA_ASSET_BASE = "https://opensea.io/assets/ethereum"
BLUR_ASSET_BASE = "https://blur.io/asset"
EMBED_COLOR = 0x0099FF

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def short_address(address: str | None) -> str:
    if not address:
        return "Unknown"
    addr = address.strip()
    if len(addr) <= 12:
        return addr
    return f"{addr[:6]}...{addr[-4:]}"


def format_native_price(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def format_usd(amount: Decimal | float) -> str:
    return f"${Decimal(str(amount)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):,.2f}"


def build_tx_link(tx_hash: str | None) -> str | None:
    if not tx_hash:
        return None
    return f"{EXPLORER_BASE}/tx/{tx_hash}"


def build_address_link(address: str) -> str:
    return f"{EXPLORER_BASE}/address/{address}"


def opensea_asset_url(contract: str, token_id: str) -> str:
    return f"{OPENSEA_ASSET_BASE}/{contract}/{token_id}"


def blur_asset_url(contract: str, token_id: str) -> str:
    return f"{BLUR_ASSET_BASE}/{contract}/{token_id}"


def label_link(label: str, address: str | None) -> str:
    if not address:
        return label
    return f"[{label}]({build_address_link(address)})"


def price_text(amount: Decimal, symbol: str, usd: Decimal | None) -> str:
    text = f"{format_native_price(amount)} {symbol}"
    if usd is not None:
        text += f" ({format_usd(usd)})"
    return text


def is_name_blocked(name: str | None, blocked_terms: tuple[str, ...] | list[str]) -> bool:
    # Whole-word match first, then a substring match with punctuation stripped.
    if not name or not blocked_terms:
        return False
    lowered = name.lower()
    squashed = _NON_ALNUM.sub("", lowered)
    for term in blocked_terms:
        term = term.strip().lower()
        if not term:
            continue
        if re.search(rf"\b{re.escape(term)}\b", lowered):
            return True
        squashed_term = _NON_ALNUM.sub("", term)
        if squashed_term and squashed_term in squashed:
            return True
    return False


def compose_sale_message(
    collection_name: str,
    token_id: str,
    display_name: str,
    verb: str,
    counterparty: str,
    price: str,
) -> str:
    head = f"{collection_name} #{token_id}"
    if display_name and display_name != f"#{token_id}":
        head += f": {display_name}"
    return f"{head} {verb.lower()} by {counterparty} for {price}"


def compose_name_message(collection_name: str, token_id: str, name: str, owner: str | None) -> str:
    text = f"{collection_name} #{token_id} was named **{name}**"
    if owner:
        text += f" by {owner}"
    return text


def build_webhook_body(
    payload: AnnouncementPayload,
    username: str,
    color: int = EMBED_COLOR,
) -> dict[str, Any]:
    fields: list[dict[str, Any]] = []
    if payload.marketplace_label and payload.marketplace_url:
        fields.append(
            {
                "name": "Marketplace",
                "value": f"[{payload.marketplace_label}]({payload.marketplace_url})",
                "inline": True,
            }
        )
    if payload.explorer_url:
        fields.append(
            {
                "name": "Block Explorer",
                "value": f"[Etherscan]({payload.explorer_url})",
                "inline": True,
            }
        )

    embed: dict[str, Any] = {
        "title": payload.title,
        "description": payload.body_text,
        "color": color,
        "fields": fields,
    }
    if payload.marketplace_url:
        embed["url"] = payload.marketplace_url
    if payload.image_url:
        embed["image"] = {"url": payload.image_url}

    return {"username": username, "embeds": [embed]}
