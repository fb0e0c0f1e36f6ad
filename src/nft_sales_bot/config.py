from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    collection_name: str
    collection_slug: str
    contract_addresses: tuple[str, ...]
    transfer_settle_delay: float = 45.0
    marketplace_index_delay: float = 30.0
    matcher_delay: float = 10.0
    announcement_pacing_delay: float = 5.0
    sale_verb: str = "Adopted"


@dataclass(frozen=True)
class ListingConfig:
    collection_name: str
    collection_slug: str
    contract_address: str
    poll_interval: float = 60.0
    cooldown_seconds: int = 24 * 60 * 60
    initial_window_seconds: int = 60 * 60
    initial_max: int = 10
    fetch_limit: int = 50
    max_processed: int = 500
    max_cooldown_entries: int = 5000


@dataclass(frozen=True)
class NamingConfig:
    collection_name: str
    contract_address: str
    event_signature: str
    token_id_bytes: int | None = None


@dataclass(frozen=True)
class Settings:
    eth_ws_url: str
    eth_rpc_url: str
    opensea_api_key: str | None
    opensea_api_base: str
    coinmarketcap_api_key: str | None
    coinmarketcap_api_base: str
    identity_api_base: str
    metadata_api_base: str
    image_url_template: str | None
    webhook_urls: tuple[str, ...]
    bot_username: str
    log_level: str
    health_log_interval_seconds: int
    ws_reconnect_base_delay: float
    ws_reconnect_max_delay: float
    ws_reconnect_jitter: float
    ws_max_reconnect_attempts: int
    ws_health_check_interval: float
    delivery_failure_pause: float
    name_blacklist: tuple[str, ...]
    pipelines: tuple[PipelineConfig, ...]
    listing: ListingConfig | None
    naming: NamingConfig | None


def _required(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _optional(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


def _optional_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _optional_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _optional_json_list(name: str) -> list[dict[str, Any]] | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    parsed = json.loads(raw)
    if not isinstance(parsed, list) or not all(isinstance(p, dict) for p in parsed):
        raise ValueError(f"{name} must decode to a JSON list of objects")
    return parsed


def pipeline_from_dict(data: dict[str, Any]) -> PipelineConfig:
    contracts = data.get("contract_addresses") or data.get("contract_address")
    if isinstance(contracts, str):
        contracts = [contracts]
    if not contracts:
        raise ValueError(f"Pipeline {data.get('name', '?')} has no contract address")
    slug = data.get("collection_slug")
    if not slug:
        raise ValueError(f"Pipeline {data.get('name', '?')} has no collection_slug")

    defaults = PipelineConfig(
        name="", collection_name="", collection_slug="", contract_addresses=()
    )
    return PipelineConfig(
        name=str(data.get("name") or slug),
        collection_name=str(data.get("collection_name") or slug),
        collection_slug=str(slug),
        contract_addresses=tuple(str(c).strip().lower() for c in contracts),
        transfer_settle_delay=float(
            data.get("transfer_settle_delay", defaults.transfer_settle_delay)
        ),
        marketplace_index_delay=float(
            data.get("marketplace_index_delay", defaults.marketplace_index_delay)
        ),
        matcher_delay=float(data.get("matcher_delay", defaults.matcher_delay)),
        announcement_pacing_delay=float(
            data.get("announcement_pacing_delay", defaults.announcement_pacing_delay)
        ),
        sale_verb=str(data.get("sale_verb", defaults.sale_verb)),
    )


def _load_pipelines() -> tuple[PipelineConfig, ...]:
    configured = _optional_json_list("PIPELINES")
    if configured is not None:
        return tuple(pipeline_from_dict(item) for item in configured)

    return (
        pipeline_from_dict(
            {
                "name": os.getenv("PIPELINE_NAME", "sales").strip(),
                "collection_name": os.getenv("COLLECTION_NAME", "").strip(),
                "collection_slug": _required("COLLECTION_SLUG"),
                "contract_addresses": list(_csv("CONTRACT_ADDRESS")),
                "transfer_settle_delay": _optional_float("TRANSFER_SETTLE_DELAY_SECONDS", 45.0),
                "marketplace_index_delay": _optional_float("MARKETPLACE_INDEX_DELAY_SECONDS", 30.0),
                "matcher_delay": _optional_float("MATCHER_DELAY_SECONDS", 10.0),
                "announcement_pacing_delay": _optional_float("ANNOUNCEMENT_PACING_SECONDS", 5.0),
            }
        ),
    )


def _load_listing() -> ListingConfig | None:
    slug = _optional("LISTING_COLLECTION_SLUG")
    if slug is None:
        return None
    return ListingConfig(
        collection_name=os.getenv("LISTING_COLLECTION_NAME", "").strip() or slug,
        collection_slug=slug,
        contract_address=_required("LISTING_CONTRACT_ADDRESS").lower(),
        poll_interval=_optional_float("LISTING_POLL_SECONDS", 60.0),
        cooldown_seconds=_optional_int("LISTING_COOLDOWN_SECONDS", 24 * 60 * 60),
        initial_max=_optional_int("LISTING_INITIAL_MAX", 10),
    )


def _load_naming() -> NamingConfig | None:
    contract = _optional("NAMING_CONTRACT_ADDRESS")
    if contract is None:
        return None
    raw_width = _optional("NAMING_TOKEN_ID_BYTES")
    return NamingConfig(
        collection_name=os.getenv("NAMING_COLLECTION_NAME", "").strip() or "Token",
        contract_address=contract.lower(),
        event_signature=_required("NAMING_EVENT_SIGNATURE"),
        token_id_bytes=int(raw_width) if raw_width else None,
    )


def load_settings() -> Settings:
    load_dotenv()
    webhook_urls = _csv("WEBHOOK_URLS")
    if not webhook_urls:
        raise ValueError("Missing required environment variable: WEBHOOK_URLS")

    return Settings(
        eth_ws_url=_required("ETH_WS_URL"),
        eth_rpc_url=_required("ETH_RPC_URL"),
        opensea_api_key=_optional("OPENSEA_API_KEY"),
        opensea_api_base=os.getenv("OPENSEA_API_BASE", "https://api.opensea.io/api/v2").strip(),
        coinmarketcap_api_key=_optional("COINMARKETCAP_API_KEY"),
        coinmarketcap_api_base=os.getenv(
            "COINMARKETCAP_API_BASE", "https://pro-api.coinmarketcap.com"
        ).strip(),
        identity_api_base=os.getenv(
            "IDENTITY_API_BASE", "https://api.ensideas.com/ens/resolve"
        ).strip(),
        metadata_api_base=os.getenv("METADATA_API_BASE", "https://api.mooncat.community").strip(),
        image_url_template=_optional("IMAGE_URL_TEMPLATE"),
        webhook_urls=webhook_urls,
        bot_username=os.getenv("BOT_USERNAME", "Sales Bot").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        health_log_interval_seconds=_optional_int("HEALTH_LOG_INTERVAL_SECONDS", 60),
        ws_reconnect_base_delay=_optional_float("WS_RECONNECT_BASE_DELAY", 2.0),
        ws_reconnect_max_delay=_optional_float("WS_RECONNECT_MAX_DELAY", 60.0),
        ws_reconnect_jitter=_optional_float("WS_RECONNECT_JITTER", 1.0),
        ws_max_reconnect_attempts=_optional_int("WS_MAX_RECONNECT_ATTEMPTS", 10),
        ws_health_check_interval=_optional_float("WS_HEALTH_CHECK_INTERVAL", 60.0),
        delivery_failure_pause=_optional_float("DELIVERY_FAILURE_PAUSE_SECONDS", 5.0),
        name_blacklist=tuple(term.lower() for term in _csv("NAME_BLACKLIST")),
        pipelines=_load_pipelines(),
        listing=_load_listing(),
        naming=_load_naming(),
    )
