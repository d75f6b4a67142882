"""Usage increments, their aggregation and the batch items sent to Zion."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

BufferKey = tuple[str, "str | None"]


@dataclass
class BatchingConfig:
    """Settings for the batching usage tracker. Durations are in seconds."""

    max_batch_size: int = 100
    flush_interval: float = 0.5
    channel_buffer: int = 10_000
    rate_limit_per_second: int = 20
    circuit_breaker_threshold: int = 3
    circuit_breaker_reset: float = 30.0
    retry_interval: float = 60.0
    max_retry_batch: int = 50


def _require_int(data: dict[str, Any], name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name!r} must be an integer")
    return value


def _require_str(data: dict[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


@dataclass
class UsageIncrement:
    """A single usage increment for one user and model."""

    email: str
    input_tokens: int
    output_tokens: int
    requests: int
    model: str | None
    timestamp: str

    def to_json(self) -> str:
        """Serialise to a JSON object string."""
        return json.dumps(
            {
                "email": self.email,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "requests": self.requests,
                "model": self.model,
                "timestamp": self.timestamp,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> UsageIncrement:
        """Parse a JSON object string; raises ValueError if it is malformed."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid increment JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("increment JSON must be an object")
        model = data.get("model")
        if model is not None and not isinstance(model, str):
            raise ValueError("field 'model' must be a string or null")
        return cls(
            email=_require_str(data, "email"),
            input_tokens=_require_int(data, "input_tokens"),
            output_tokens=_require_int(data, "output_tokens"),
            requests=_require_int(data, "requests"),
            model=model,
            timestamp=_require_str(data, "timestamp"),
        )


@dataclass
class AggregatedUsage:
    """Usage summed over several increments, keeping the earliest timestamp."""

    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    timestamp: str | None = None

    def add(self, increment: UsageIncrement) -> None:
        """Add an increment's counts into this aggregate."""
        self.input_tokens += increment.input_tokens
        self.output_tokens += increment.output_tokens
        self.requests += increment.requests
        if self.timestamp is None or increment.timestamp < self.timestamp:
            self.timestamp = increment.timestamp

    def is_empty(self) -> bool:
        """True if no tokens and no requests have been added."""
        return self.input_tokens == 0 and self.output_tokens == 0 and self.requests == 0

    def to_increment(self, email: str, model: str | None) -> UsageIncrement:
        """Turn the aggregate back into a single increment for the given key."""
        return UsageIncrement(
            email=email,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            requests=self.requests,
            model=model,
            timestamp=self.timestamp or "",
        )


@dataclass
class BatchIncrementItem:
    """One entry of a batch-increment request to Zion."""

    email: str
    ai_input_tokens: int | None = None
    ai_output_tokens: int | None = None
    ai_requests: int | None = None
    model: str | None = None
    timestamp: str | None = None

    @classmethod
    def from_usage(
        cls, email: str, model: str | None, usage: AggregatedUsage
    ) -> BatchIncrementItem:
        """Build an item from aggregated usage; zero counts are left unset."""
        return cls(
            email=email,
            ai_input_tokens=usage.input_tokens if usage.input_tokens > 0 else None,
            ai_output_tokens=usage.output_tokens if usage.output_tokens > 0 else None,
            ai_requests=usage.requests if usage.requests > 0 else None,
            model=model,
            timestamp=usage.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        """The request body form, with unset fields left out."""
        fields = {
            "email": self.email,
            "ai_input_tokens": self.ai_input_tokens,
            "ai_output_tokens": self.ai_output_tokens,
            "ai_requests": self.ai_requests,
            "model": self.model,
            "timestamp": self.timestamp,
        }
        return {key: value for key, value in fields.items() if value is not None}


class CircuitState(Enum):
    """Circuit breaker state; the value is the metrics gauge reading."""

    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


def aggregate(
    buffer: dict[tuple[str, str | None], AggregatedUsage], increment: UsageIncrement
) -> AggregatedUsage:
    """Add an increment to the buffer under its (email, model) key."""
    usage = buffer.setdefault((increment.email, increment.model), AggregatedUsage())
    usage.add(increment)
    return usage