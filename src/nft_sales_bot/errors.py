from __future__ import annotations


class BotError(Exception):
    """Base class for errors raised inside the bot."""


class ChainRPCError(BotError):
    """JSON-RPC call to the chain node failed or returned an error object."""


class DeliveryError(BotError):
    """One or more webhook destinations did not accept an announcement."""

    def __init__(self, failed: list[str]) -> None:
        self.failed = failed
        super().__init__(f"Delivery failed for {len(failed)} destination(s): {', '.join(failed)}")


class EventSourceExhausted(BotError):
    """The live log subscription gave up after its reconnect budget."""
