"""Runtime metrics for voice sessions and chat traffic."""

import bisect
import hashlib
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class HistogramSnapshot:
    """Serializable histogram snapshot for metrics export."""

    bounds: tuple[float, ...]
    cumulative_counts: tuple[int, ...]
    count: int
    sum: float


class Histogram:
    """Thread-safe(under external lock) histogram with fixed buckets."""

    def __init__(self, bounds: tuple[float, ...]):
        normalized = []
        for value in bounds:
            value = float(value)
            if value < 0:
                continue
            if normalized and value <= normalized[-1]:
                continue
            normalized.append(value)
        self._bounds = tuple(normalized)
        self._bucket_counts = [0] * (len(self._bounds) + 1)  # includes +Inf bucket
        self._count = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        """Observe a non-negative sample."""
        if value < 0:
            return
        index = bisect.bisect_left(self._bounds, value)
        self._bucket_counts[index] += 1
        self._count += 1
        self._sum += value

    def snapshot(self) -> HistogramSnapshot:
        """Return cumulative counts for Prometheus exposition."""
        cumulative = []
        running = 0
        for count in self._bucket_counts:
            running += count
            cumulative.append(running)
        return HistogramSnapshot(
            bounds=self._bounds,
            cumulative_counts=tuple(cumulative),
            count=self._count,
            sum=self._sum,
        )


_STAGE_BOUNDS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


class Metrics:
    """Thread-safe counters and aggregations for server metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active_connections = 0
        self._active_sessions = 0
        self._processing_sessions = 0
        self._chunks_received = 0
        self._chunks_rejected = 0
        self._bytes_received = 0
        self._cycles_total = 0
        self._cycles_failed = 0
        self._cycles_deferred = 0
        self._transcripts = 0
        self._audio_responses = 0
        self._chat_replies = 0
        self._cycle_count = 0
        self._cycle_total = 0.0
        self._cycle_max = 0.0
        self._rate_limit_blocks: Dict[str, int] = defaultdict(int)
        self._rate_limit_blocks_by_key: Dict[str, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._cycle_latency_hist = Histogram(_STAGE_BOUNDS)
        self._stage_hists: Dict[str, Histogram] = {
            "recognition": Histogram(_STAGE_BOUNDS),
            "reply": Histogram(_STAGE_BOUNDS),
            "synthesis": Histogram(_STAGE_BOUNDS),
        }

    def _hash_key(self, value: str) -> str:
        if not value:
            return ""
        digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
        return digest[:16]

    def increase_active_connections(self) -> None:
        with self._lock:
            self._active_connections += 1

    def decrease_active_connections(self) -> None:
        with self._lock:
            if self._active_connections > 0:
                self._active_connections -= 1

    def increase_active_sessions(self) -> None:
        with self._lock:
            self._active_sessions += 1

    def decrease_active_sessions(self) -> None:
        with self._lock:
            if self._active_sessions > 0:
                self._active_sessions -= 1

    def record_chunk(self, size_bytes: int, accepted: bool) -> None:
        """Record one inbound audio chunk."""
        with self._lock:
            if accepted:
                self._chunks_received += 1
                self._bytes_received += max(0, int(size_bytes))
            else:
                self._chunks_rejected += 1

    def record_cycle_deferred(self) -> None:
        """Record a threshold crossing skipped because a cycle was running."""
        with self._lock:
            self._cycles_deferred += 1

    def cycle_started(self) -> None:
        with self._lock:
            self._processing_sessions += 1

    def cycle_finished(self, elapsed_sec: float, success: bool) -> None:
        """Record the end of a processing cycle."""
        with self._lock:
            if self._processing_sessions > 0:
                self._processing_sessions -= 1
            self._cycles_total += 1
            if not success:
                self._cycles_failed += 1
            self._cycle_count += 1
            self._cycle_total += elapsed_sec
            self._cycle_max = max(self._cycle_max, elapsed_sec)
            self._cycle_latency_hist.observe(elapsed_sec)

    def record_stage(self, stage: str, elapsed_sec: float) -> None:
        """Record latency of one cycle stage (recognition, reply, synthesis)."""
        with self._lock:
            histogram = self._stage_hists.get(stage)
            if histogram is not None:
                histogram.observe(elapsed_sec)

    def record_transcript(self) -> None:
        with self._lock:
            self._transcripts += 1

    def record_audio_response(self) -> None:
        with self._lock:
            self._audio_responses += 1

    def record_chat_reply(self) -> None:
        with self._lock:
            self._chat_replies += 1

    def record_error(self, code: str) -> None:
        """Record an error code occurrence."""
        with self._lock:
            self._error_counts[str(code)] += 1

    def record_rate_limit_block(self, scope: str, key: str | None = None) -> None:
        """Record a rate limit block for a scope and optional key."""
        if not scope:
            scope = "unknown"
        with self._lock:
            self._rate_limit_blocks[scope] += 1
            if key:
                hashed = self._hash_key(key)
                if hashed:
                    self._rate_limit_blocks_by_key[f"{scope}_{hashed}"] += 1

    def render(self) -> Dict[str, Any]:
        """Render metrics as a serializable payload."""
        with self._lock:
            payload = {
                "active_connections": self._active_connections,
                "active_sessions": self._active_sessions,
                "processing_sessions": self._processing_sessions,
                "chunks_received_total": self._chunks_received,
                "chunks_rejected_total": self._chunks_rejected,
                "bytes_received_total": self._bytes_received,
                "cycles_total": self._cycles_total,
                "cycles_failed_total": self._cycles_failed,
                "cycles_deferred_total": self._cycles_deferred,
                "transcripts_total": self._transcripts,
                "audio_responses_total": self._audio_responses,
                "chat_replies_total": self._chat_replies,
                "cycle_latency_total": self._cycle_total,
                "cycle_latency_count": self._cycle_count,
                "cycle_latency_max": self._cycle_max,
                "error_counts": dict(self._error_counts),
                "rate_limit_blocks": dict(self._rate_limit_blocks),
            }
            if self._rate_limit_blocks_by_key:
                payload["rate_limit_blocks_by_key"] = dict(
                    self._rate_limit_blocks_by_key
                )
            payload["histograms"] = self._render_histograms()
            return payload

    def _render_histograms(self) -> Dict[str, Dict[str, Any]]:
        """Render histogram values as JSON-friendly maps."""
        rendered = {
            "cycle_latency_sec": self._histogram_payload(self._cycle_latency_hist)
        }
        for stage, histogram in self._stage_hists.items():
            rendered[f"{stage}_latency_sec"] = self._histogram_payload(histogram)
        return rendered

    @staticmethod
    def _histogram_payload(histogram: Histogram) -> Dict[str, Any]:
        snap = histogram.snapshot()
        buckets: Dict[str, int] = {}
        for idx, bound in enumerate(snap.bounds):
            buckets[str(bound)] = snap.cumulative_counts[idx]
        buckets["+Inf"] = snap.cumulative_counts[-1]
        return {"buckets": buckets, "count": snap.count, "sum": snap.sum}

    def snapshot(self) -> Dict[str, float]:
        """Return a snapshot with averages and maxima for key metrics."""
        with self._lock:
            cycle_avg = (
                (self._cycle_total / self._cycle_count) if self._cycle_count else 0.0
            )
            return {
                "active_connections": float(self._active_connections),
                "active_sessions": float(self._active_sessions),
                "processing_sessions": float(self._processing_sessions),
                "cycle_latency_avg": cycle_avg,
                "cycle_latency_max": self._cycle_max,
                "cycles_failed": float(self._cycles_failed),
            }
