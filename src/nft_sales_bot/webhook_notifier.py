from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .errors import DeliveryError

logger = logging.getLogger(__name__)


class WebhookNotifier:
    # Logs and errors name destinations by position; webhook URLs carry credentials.

    def __init__(
        self,
        urls: list[str] | tuple[str, ...],
        timeout: float = 15.0,
        retries: int = 4,
        failure_pause: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not urls:
            raise ValueError("At least one webhook URL is required")
        self.urls = tuple(urls)
        self.retries = retries
        self.failure_pause = failure_pause
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, body: dict[str, Any]) -> int:
        failed: list[str] = []
        delivered = 0
        for idx, url in enumerate(self.urls):
            label = f"webhook[{idx}]"
            try:
                await self._post(url, body, label)
                delivered += 1
            except Exception as exc:
                logger.error("Delivery to %s failed: %s", label, exc)
                failed.append(label)
                await asyncio.sleep(self.failure_pause)

        if failed:
            raise DeliveryError(failed)
        return delivered

    async def _post(self, url: str, body: dict[str, Any], label: str) -> None:
        delay = 1.0
        for attempt in range(self.retries):
            try:
                response = await self._client.post(url, json=body)

                if response.status_code == 429:
                    retry_after = _retry_after(response)
                    if attempt == self.retries - 1:
                        response.raise_for_status()
                    logger.warning("%s rate limited. Sleeping %.1fs", label, retry_after)
                    await asyncio.sleep(retry_after)
                    continue

                response.raise_for_status()
                return
            except Exception as exc:
                if attempt == self.retries - 1:
                    raise
                logger.warning("%s send attempt %d failed: %s", label, attempt + 1, exc)
                await asyncio.sleep(delay)
                delay *= 2


def _retry_after(response: httpx.Response, default: float = 2.0) -> float:
    try:
        data = response.json()
    except ValueError:
        return default
    if not isinstance(data, dict):
        return default
    try:
        return float(data.get("retry_after", default))
    except (TypeError, ValueError):
        return default
