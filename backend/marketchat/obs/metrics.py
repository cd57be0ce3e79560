"""Central registry for Prometheus metrics used by the inbox engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

AGGREGATION_PASSES = Counter(
	"marketchat_inbox_aggregation_passes_total",
	"Conversation aggregation passes by result",
	["result"],
)

AGGREGATION_DURATION = Histogram(
	"marketchat_inbox_aggregation_duration_seconds",
	"Fetch plus aggregation time for one sync pass",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

DROPPED_MESSAGES = Counter(
	"marketchat_inbox_dropped_total",
	"Message records excluded from aggregation",
	["reason"],
)

SYNC_TRIGGERS = Counter(
	"marketchat_inbox_sync_triggers_total",
	"Re-aggregation triggers by source",
	["source"],
)

SYNC_COALESCED = Counter(
	"marketchat_inbox_sync_coalesced_total",
	"Triggers folded into an already scheduled pass",
)

MUTATIONS = Counter(
	"marketchat_inbox_mutations_total",
	"Conversation overlay mutations by operation and result",
	["operation", "result"],
)

FEED_EVENTS = Counter(
	"marketchat_inbox_feed_events_total",
	"Change-feed notifications delivered to subscribers",
	["backend"],
)

FEED_RECONNECTS = Counter(
	"marketchat_inbox_feed_reconnects_total",
	"Change-feed listener reconnect attempts",
	["backend"],
)


def record_pass(result: str, *, duration_seconds: float | None = None) -> None:
	AGGREGATION_PASSES.labels(result=result).inc()
	if duration_seconds is not None:
		AGGREGATION_DURATION.observe(duration_seconds)


def inc_dropped(reason: str) -> None:
	DROPPED_MESSAGES.labels(reason=reason).inc()


def inc_trigger(source: str) -> None:
	SYNC_TRIGGERS.labels(source=source).inc()


def inc_coalesced() -> None:
	SYNC_COALESCED.inc()


def inc_mutation(operation: str, result: str) -> None:
	MUTATIONS.labels(operation=operation, result=result).inc()


def inc_feed_event(backend: str) -> None:
	FEED_EVENTS.labels(backend=backend).inc()


def inc_feed_reconnect(backend: str) -> None:
	FEED_RECONNECTS.labels(backend=backend).inc()
