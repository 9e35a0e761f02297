"""Prometheus instrumentation for the replicator."""

from __future__ import annotations

from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class ReplicatorMetrics:
    """Counters and gauges for one replicator, registered on ``registry``."""

    def __init__(
        self,
        namespace: str = "datom_replication",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._registry = registry if registry is not None else CollectorRegistry()
        self._prefix = namespace
        self._transactions = Counter(
            "transactions",
            "Source transactions applied to the destination",
            namespace=namespace,
            registry=self._registry,
        )
        self._facts = Counter(
            "facts",
            "Facts translated and committed",
            namespace=namespace,
            registry=self._registry,
        )
        self._retries = Counter(
            "transient_retries",
            "Commits retried after a destination timeout",
            namespace=namespace,
            registry=self._registry,
        )
        self._errors = Counter(
            "errors",
            "Fatal replication errors",
            namespace=namespace,
            registry=self._registry,
        )
        self._source_t = Gauge(
            "source_t",
            "Last source t applied to the destination",
            namespace=namespace,
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_applied(self, t: int, facts: int) -> None:
        self._transactions.inc()
        if facts > 0:
            self._facts.inc(facts)
        self._source_t.set(t)

    def inc_retries(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._retries.inc(amount)

    def inc_errors(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._errors.inc(amount)

    def snapshot(self) -> Dict[str, float]:
        def _value(name: str) -> float:
            value = self._registry.get_sample_value(f"{self._prefix}_{name}")
            return value or 0.0

        return {
            "transactions_total": _value("transactions_total"),
            "facts_total": _value("facts_total"),
            "transient_retries_total": _value("transient_retries_total"),
            "errors_total": _value("errors_total"),
            "source_t": _value("source_t"),
        }
