# sentinel_proxy

Usage accounting for an AI proxy. The package counts each request's token
usage and reports it to a usage service, which this README calls "Zion". You
supply the Zion client. Usage can be reported one call at a time, or queued
and sent in batches by a background asyncio task.

## Installation

```
pip install .
```

To run the tests, install the test extras with `pip install .[test]` and
then run `pytest`.

## Modules

- `sentinel_proxy.tracker`: `UsageData`, `UsageTracker` and the limit name
  constant `AI_USAGE` (`"ai_usage"`).
- `sentinel_proxy.increments`: `BatchingConfig`, `UsageIncrement`,
  `AggregatedUsage`, `BatchIncrementItem`, `CircuitState` and `aggregate()`.
- `sentinel_proxy.batching`: `BatchingUsageTracker`, `RateLimiter`,
  `CircuitBreaker`, `FailedIncrementStore` and the Redis key
  `REDIS_FAILED_INCREMENTS_KEY` (`"sentinel:usage:failed"`).

## Recording usage directly

`UsageTracker` makes one call per recording. `zion_client` can be any object
that has an async
`increment_usage(external_id, input_tokens, output_tokens, requests, model, timestamp)`
method. The tracker passes `None` for both `model` and `timestamp`.

```python
from sentinel_proxy.tracker import UsageData, UsageTracker

tracker = UsageTracker(zion_client)
await tracker.record_usage("user@example.com", 500, 200)           # counts one request
await tracker.record_streaming_usage("user@example.com", 1000, 2000)
await tracker.record_tokens_only("user@example.com", 100, 0)       # no request counted

usage = UsageData(500, 200, count_request=True)
usage.total_tokens()                   # 700
UsageData.tokens_only(0, 0).has_usage()  # False, so nothing is sent
```

`UsageData` raises `ValueError` when a token count is negative. Any errors
that the client raises pass through to the caller.

## Batched, fire-and-forget tracking

`BatchingUsageTracker(zion_client, redis, config)` puts increments on a
bounded queue and returns at once. The client needs two async methods:

- `batch_increment(items)`, which takes a list of `BatchIncrementItem` and
  returns an object with `processed`, `failed` and `results` (each result
  has `email` and `success`);
- `increment_usage(...)`, with the same signature as above.

`redis` can be any object with async `rpush`, `llen` and `lpop` methods, or
`None`.

```python
from sentinel_proxy.batching import BatchingUsageTracker
from sentinel_proxy.increments import BatchingConfig

async with BatchingUsageTracker(zion_client, redis, BatchingConfig()) as tracker:
    tracker.track("user@example.com", 100, 50, "gpt-4o")
    tracker.track_request_only("user@example.com", None)
# leaving the block calls close(), which sends what is left
```

You can also call `start()` and `close()` yourself. `flush()` aggregates and
sends everything queued so far without a running worker.

### What the background worker does

- Adds up increments by `(email, model)` and keeps the earliest timestamp.
  Timestamps are UTC RFC 3339 strings with milliseconds, such as
  `2024-01-15T10:30:00.000Z`.
- Sends a batch once the buffer holds `max_batch_size` keys, or after
  `flush_interval` seconds have passed.
- Leaves out zero counts in each `BatchIncrementItem`.
- Limits calls to `rate_limit_per_second` per second.

When a Redis client is given, it also:

- opens the circuit after `circuit_breaker_threshold` consecutive failures;
- drops batches while the circuit is open;
- lets one attempt through once `circuit_breaker_reset` seconds have passed;
- saves increments from failed batches, and failed items of partly failed
  batches, to the Redis list;
- every `retry_interval` seconds, while the circuit is closed, resends up to
  `max_retry_batch` saved increments one at a time through
  `increment_usage`. `retry_failed()` runs this step on demand and returns
  `(succeeded, failed)`.

Without Redis, a failed batch is only logged. There is no persistence, no
retry and no circuit breaker.

### Behaviour of `track`

`track` never blocks. When the queue is full, or the tracker has been
closed, the increment is dropped and a log entry is written. An empty email
is logged as a warning. A negative token count raises `ValueError`.

### Defaults

`BatchingConfig` holds these defaults. All durations are in seconds.

| Setting | Default |
| --- | --- |
| `max_batch_size` | 100 |
| `flush_interval` | 0.5 |
| `channel_buffer` | 10,000 |
| `rate_limit_per_second` | 20 |
| `circuit_breaker_threshold` | 3 |
| `circuit_breaker_reset` | 30 |
| `retry_interval` | 60 |
| `max_retry_batch` | 50 |

`BatchingUsageTracker.for_testing(zion_client)` builds a tracker without
Redis. It flushes every 0.01 s, in batches of at most 10 keys, with a queue
of 1000 entries.

## What this package does not do

This package covers usage accounting only. It does not include:

- an HTTP proxy server or routes;
- a Zion API client;
- a Redis client;
- token counting for prompts.

Those must come from the application that uses it.