from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from eth_abi import decode as abi_decode
from web3 import Web3

from .errors import EventSourceExhausted
from .types import NameEvent, TransferRecord

logger = logging.getLogger(__name__)

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


class LogSubscription:
    """eth_subscribe("logs") feed that reconnects and health-checks the socket."""

    def __init__(
        self,
        ws_url: str,
        addresses: list[str] | tuple[str, ...],
        topics: list[Any],
        *,
        name: str = "logs",
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        jitter: float = 1.0,
        max_attempts: int = 10,
        health_check_interval: float = 60.0,
        health_check_timeout: float = 15.0,
        subscribe_timeout: float = 15.0,
        connect: Callable[..., Any] = websockets.connect,
        rng: random.Random | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.addresses = [Web3.to_checksum_address(a) for a in addresses]
        self.topics = topics
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout
        self.subscribe_timeout = subscribe_timeout
        self._connect = connect
        self._rng = rng or random.Random()
        self._ids = itertools.count(1)
        self._pending_checks: dict[int, asyncio.Future[Any]] = {}
        self.reconnects = 0

    async def logs(self) -> AsyncIterator[dict[str, Any]]:
        attempt = 0
        while True:
            try:
                async with self._connect(self.ws_url, ping_interval=20, ping_timeout=20) as ws:
                    sub_id = await self._subscribe(ws)
                    logger.info("[%s] Subscribed to %s (id=%s)", self.name, self.ws_url, sub_id)
                    attempt = 0
                    watchdog = asyncio.create_task(self._watchdog(ws))
                    try:
                        async for raw in ws:
                            log = self._handle_message(raw)
                            if log is not None:
                                yield log
                    finally:
                        watchdog.cancel()
                        await asyncio.gather(watchdog, return_exceptions=True)
                logger.warning("[%s] Subscription closed, reconnecting", self.name)
                self.reconnects += 1
                await asyncio.sleep(self.base_delay)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.critical(
                        "[%s] Giving up after %d consecutive connection failures: %s",
                        self.name,
                        attempt,
                        exc,
                    )
                    raise EventSourceExhausted(
                        f"{self.name}: {attempt} consecutive connection failures"
                    ) from exc
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "[%s] Subscription error (%s). Retry %d/%d in %.1fs",
                    self.name,
                    exc,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                self.reconnects += 1
                await asyncio.sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        raw = self.base_delay * (2 ** attempt) + self._rng.uniform(0, self.jitter)
        return min(raw, self.max_delay)

    def subscribe_request(self, request_id: int) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.addresses, "topics": self.topics}],
        }

    async def _subscribe(self, ws: Any) -> str:
        request_id = next(self._ids)
        await ws.send(json.dumps(self.subscribe_request(request_id)))

        async def _await_reply() -> str:
            while True:
                message = json.loads(await ws.recv())
                if message.get("id") != request_id:
                    continue
                if message.get("error"):
                    raise RuntimeError(f"eth_subscribe rejected: {message['error']}")
                return str(message.get("result"))

        return await asyncio.wait_for(_await_reply(), timeout=self.subscribe_timeout)

    def _handle_message(self, raw: str | bytes) -> dict[str, Any] | None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("[%s] Ignoring non-JSON frame", self.name)
            return None
        if not isinstance(message, dict):
            return None

        if message.get("method") == "eth_subscription":
            result = message.get("params", {}).get("result")
            return result if isinstance(result, dict) else None

        waiter = self._pending_checks.pop(message.get("id"), None)
        if waiter is not None and not waiter.done():
            waiter.set_result(message.get("result"))
        return None

    async def _watchdog(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.health_check_interval)
            check_id = next(self._ids)
            waiter: asyncio.Future[Any] = loop.create_future()
            self._pending_checks[check_id] = waiter
            try:
                request = {
                    "jsonrpc": "2.0",
                    "id": check_id,
                    "method": "eth_blockNumber",
                    "params": [],
                }
                await ws.send(json.dumps(request))
                await asyncio.wait_for(waiter, timeout=self.health_check_timeout)
            except Exception as exc:
                logger.warning("[%s] Health check failed (%r), forcing reconnect", self.name, exc)
                await ws.close()
                return
            finally:
                self._pending_checks.pop(check_id, None)


def parse_transfer_log(log: dict[str, Any]) -> TransferRecord | None:
    if log.get("removed"):
        return None
    topics = log.get("topics") or []
    if not topics or str(topics[0]).lower() != TRANSFER_TOPIC:
        return None

    tx_hash = log.get("transactionHash")
    contract = log.get("address")
    if not tx_hash or not contract:
        return None

    words = _data_words(log.get("data"))
    try:
        if len(topics) >= 4:
            token_id = int(topics[3], 16)
        elif len(topics) == 3 and words:
            # Pre-721 contracts that keep the token id unindexed.
            token_id = words[0]
        else:
            return None
        seller = _topic_to_address(topics[1])
    except (TypeError, ValueError):
        return None

    return TransferRecord(
        token_id=str(token_id),
        transaction_hash=str(tx_hash),
        seller_address=seller,
        contract_address=str(contract).lower(),
    )


def parse_name_log(
    log: dict[str, Any],
    topic: str,
    token_id_bytes: int | None = None,
) -> NameEvent | None:
    # token_id_bytes=None reads the indexed id as a uint, N as a left-aligned bytesN.
    if log.get("removed"):
        return None
    topics = log.get("topics") or []
    if len(topics) < 2 or str(topics[0]).lower() != topic.lower():
        return None

    raw_data = _hex_bytes(log.get("data"))
    if raw_data is None or len(raw_data) < 32:
        return None

    id_topic = str(topics[1])
    try:
        if token_id_bytes is None:
            token_id = str(int(id_topic, 16))
        else:
            id_hex = id_topic.removeprefix("0x")[: 2 * token_id_bytes].lower()
            bytes.fromhex(id_hex)
            token_id = "0x" + id_hex
    except (TypeError, ValueError):
        return None

    (name_bytes,) = abi_decode(["bytes32"], raw_data[:32])
    name = name_bytes.rstrip(b"\x00").decode("utf-8", errors="replace").strip()
    if not name:
        return None

    return NameEvent(
        token_id=token_id,
        name=name,
        transaction_hash=str(log.get("transactionHash") or ""),
        contract_address=str(log.get("address") or "").lower(),
    )


def _topic_to_address(topic: str) -> str:
    text = str(topic)
    if text.startswith("0x"):
        text = text[2:]
    if len(text) < 40:
        raise ValueError(f"topic too short for an address: {topic}")
    return "0x" + text[-40:].lower()


def _hex_bytes(value: Any) -> bytes | None:
    if not isinstance(value, str):
        return None
    text = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        return None


def _data_words(value: Any) -> list[int]:
    raw = _hex_bytes(value) or b""
    return [int.from_bytes(raw[i : i + 32], "big") for i in range(0, len(raw) - 31, 32)]
