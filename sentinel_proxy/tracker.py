"""Per-request usage recording against the Zion usage API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

AI_USAGE = "ai_usage"
"""Unified AI usage limit name (input tokens, output tokens and requests)."""


class ZionUsageClient(Protocol):
    """The part of the Zion client the tracker needs."""

    async def increment_usage(
        self,
        external_id: str,
        input_tokens: int,
        output_tokens: int,
        requests: int,
        model: str | None,
        timestamp: str | None,
    ) -> Any: ...


@dataclass
class UsageData:
    """Token and request usage for a single request."""

    input_tokens: int = 0
    output_tokens: int = 0
    count_request: bool = False

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must not be negative")

    @classmethod
    def tokens_only(cls, input_tokens: int, output_tokens: int) -> UsageData:
        """Usage that records tokens without counting a request."""
        return cls(input_tokens, output_tokens, count_request=False)

    def total_tokens(self) -> int:
        """Input and output tokens together."""
        return self.input_tokens + self.output_tokens

    def has_usage(self) -> bool:
        """True if there is anything to record."""
        return self.input_tokens > 0 or self.output_tokens > 0 or self.count_request


class UsageTracker:
    """Reports usage to Zion with one call per recording."""

    def __init__(self, zion_client: ZionUsageClient) -> None:
        self.zion_client = zion_client

    async def record_usage(
        self, external_id: str, input_tokens: int, output_tokens: int
    ) -> None:
        """Record tokens and one request in a single call."""
        await self.record_usage_data(
            external_id, UsageData(input_tokens, output_tokens, count_request=True)
        )

    async def record_usage_data(self, external_id: str, usage: UsageData) -> None:
        """Record the given usage; nothing is sent if it is empty."""
        if not usage.has_usage():
            return

        requests = 1 if usage.count_request else 0
        await self.zion_client.increment_usage(
            external_id,
            usage.input_tokens,
            usage.output_tokens,
            requests,
            None,
            None,
        )
        logger.info(
            "Recorded usage external_id=%s input_tokens=%d output_tokens=%d "
            "total_tokens=%d counted_request=%s",
            external_id,
            usage.input_tokens,
            usage.output_tokens,
            usage.total_tokens(),
            usage.count_request,
        )

    async def record_streaming_usage(
        self, external_id: str, input_tokens: int, output_tokens: int
    ) -> None:
        """Record the final counts of a completed stream."""
        await self.record_usage(external_id, input_tokens, output_tokens)

    async def record_tokens_only(
        self, external_id: str, input_tokens: int, output_tokens: int
    ) -> None:
        """Record tokens without counting a request."""
        await self.record_usage_data(
            external_id, UsageData.tokens_only(input_tokens, output_tokens)
        )