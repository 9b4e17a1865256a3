from collections import deque
from dataclasses import dataclass
from typing import Any


@dataclass
class TurnEvent:
    total_ms: float
    llm_ms: float
    tokens_in: int
    tokens_out: int
    tool_calls: int
    error: bool


class MetricsTracker:
    def __init__(self) -> None:
        self.events: deque[TurnEvent] = deque(maxlen=5000)
        self.turn_count = 0
        self.persistence_failures = 0
        self.reports_rendered = 0
        self.report_failures = 0

    def record_turn(
        self,
        *,
        total_ms: float,
        llm_ms: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        tool_calls: int = 0,
        error: bool = False,
    ) -> None:
        self.turn_count += 1
        self.events.append(
            TurnEvent(
                total_ms=total_ms,
                llm_ms=llm_ms,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                tool_calls=tool_calls,
                error=error,
            )
        )

    @staticmethod
    def _percentile(values: list[float], p: float) -> float:
        if not values:
            return 0.0
        arr = sorted(values)
        idx = min(int(len(arr) * p), len(arr) - 1)
        return round(arr[idx], 2)

    def stats(self) -> dict[str, Any]:
        totals = [e.total_ms for e in self.events]
        llms = [e.llm_ms for e in self.events]
        return {
            "turn_count": self.turn_count,
            "latency_ms": {
                "overall_p50": self._percentile(totals, 0.5),
                "overall_p95": self._percentile(totals, 0.95),
                "llm_p50": self._percentile(llms, 0.5),
                "llm_p95": self._percentile(llms, 0.95),
            },
            "tokens": {
                "input": sum(e.tokens_in for e in self.events),
                "output": sum(e.tokens_out for e in self.events),
            },
            "tool_calls": sum(e.tool_calls for e in self.events),
            "errors": sum(1 for e in self.events if e.error),
            "persistence_failures": self.persistence_failures,
            "reports": {"rendered": self.reports_rendered, "failed": self.report_failures},
        }


metrics = MetricsTracker()
