from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class SendSample:
    ts: float
    channel: str
    latency_ms: float
    success: bool


_send_samples: Deque[SendSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_send(*, channel: str, latency_ms: float, success: bool) -> None:
    # Capture sender latency and outcome per channel.
    _send_samples.append(
        SendSample(
            ts=time.time(),
            channel=channel,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for queue dashboards and worker logs.
    _counters[name] += value


def send_latency_by_channel(window_s: int) -> dict[str, dict[str, float | None]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[SendSample]] = defaultdict(list)
    for sample in _send_samples:
        if sample.ts >= cutoff:
            grouped[sample.channel].append(sample)
    summary: dict[str, dict[str, float | None]] = {}
    for channel, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        index = max(0, int(round(0.95 * (len(latencies) - 1))))
        failures = sum(1 for sample in samples if not sample.success)
        summary[channel] = {
            "p95_ms": latencies[index] if latencies else None,
            "error_rate": (failures / len(samples)) if samples else None,
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests share the process-wide buffers.
    _send_samples.clear()
    _counters.clear()
