"""In-process checkout metrics in the Prometheus text format.

Counters, gauges and histograms live in a module-level registry and are
rendered by :func:`generate_metrics_text`.  Only the standard library is
used; a transport layer can expose the text on a ``/metrics`` endpoint.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple

LabelKey = Tuple[str, ...]


class Metric:
    """Base class for all metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _labels(self, key: LabelKey, **more: str) -> str:
        pairs = [f'{n}="{v}"' for n, v in zip(self.label_names, key)]
        pairs += [f'{n}="{v}"' for n, v in more.items()]
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def _header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def to_prometheus(self) -> List[str]:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic counter.  ``inc(amount, **labels)`` adds to it."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[self._key(labels)] += float(amount)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        with self._lock:
            lines += [f"{self.name}{self._labels(k)} {v}" for k, v in self._values.items()]
        return lines


class Gauge(Metric):
    """Value that may go up or down."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self.inc(-amount, **labels)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        with self._lock:
            lines += [f"{self.name}{self._labels(k)} {v}" for k, v in self._values.items()]
        return lines


class Histogram(Metric):
    """Histogram with fixed ascending bucket upper bounds.

    Observations above the largest bound only land in ``+Inf``.
    """

    kind = "histogram"

    def __init__(self, name: str, description: str, label_names: Iterable[str], buckets: Iterable[float]):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        self._counts: Dict[LabelKey, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            counts = self._counts[key]
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    counts[idx] += 1
                    break
            self._totals[key] += 1
            self._sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._totals.get(self._key(labels), 0)

    def to_prometheus(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key, total in self._totals.items():
                cumulative = 0
                for upper, n in zip(self.buckets, self._counts[key]):
                    cumulative += n
                    lines.append(f"{self.name}_bucket{self._labels(key, le=str(upper))} {cumulative}")
                lines.append(f"{self.name}_bucket{self._labels(key, le='+Inf')} {total}")
                lines.append(f"{self.name}_sum{self._labels(key)} {self._sums[key]}")
                lines.append(f"{self.name}_count{self._labels(key)} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def generate_metrics_text() -> bytes:
    """Render every registered metric."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return "\n".join(lines).encode("utf-8")


# -----------------------------------------------------------------------------
# Checkout metrics
# -----------------------------------------------------------------------------

SETTLEMENT_DURATION_SECONDS = Histogram(
    name="checkout_settlement_duration_seconds",
    description="Duration of settlement attempts in seconds",
    label_names=["outcome"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

SETTLEMENT_ERROR_TOTAL = Counter(
    name="checkout_settlement_error_total",
    description="Rejected or failed settlement attempts, labelled by error kind",
    label_names=["kind"],
)

TENDER_AMOUNT_TOTAL = Counter(
    name="checkout_tender_amount_total",
    description="Settled tender amounts, labelled by tender method",
    label_names=["method"],
)

OPEN_CARTS = Gauge(
    name="checkout_open_carts",
    description="Carts currently held by the registry",
)
