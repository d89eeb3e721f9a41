"""Central registry for Prometheus metrics used by the sync client."""

from __future__ import annotations

from prometheus_client import Counter, Gauge


CHAT_SEND = Counter(
	"dormchat_chat_send_total",
	"Chat message send attempts",
	["result"],
)

CHAT_READ_UPDATES = Counter(
	"dormchat_chat_read_updates_total",
	"Messages marked read by read receipts",
)

CHAT_READ_UPDATE_FAILURES = Counter(
	"dormchat_chat_read_update_failures_total",
	"Read receipt writes that failed and were dropped",
)

CHAT_DUPLICATES_DROPPED = Counter(
	"dormchat_chat_duplicates_dropped_total",
	"Duplicate message instances dropped while merging",
)

CHAT_REALTIME_EVENTS = Counter(
	"dormchat_chat_realtime_events_total",
	"Realtime events received",
	["collection", "event"],
)

CONVERSATION_REFRESHES = Counter(
	"dormchat_conversation_refreshes_total",
	"Conversation list refreshes",
	["outcome"],
)

CONVERSATION_CREATE_CONFLICTS = Counter(
	"dormchat_conversation_create_conflicts_total",
	"Conversation creations that lost a uniqueness race",
)

CONVERSATION_SCHEMA_FALLBACKS = Counter(
	"dormchat_conversation_schema_fallbacks_total",
	"Product-centric conversation attempts that fell back to the legacy shape",
)

SUBSCRIPTION_FAILURES = Counter(
	"dormchat_realtime_subscription_failures_total",
	"Realtime subscription attempts that failed",
	["collection"],
)

SUBSCRIPTION_DEGRADED = Counter(
	"dormchat_realtime_degraded_total",
	"Realtime subscriptions abandoned after exhausting retries",
	["collection"],
)

UNREAD_CONVERSATIONS = Gauge(
	"dormchat_unread_conversations",
	"Conversations with unread messages for the signed-in user",
)


def inc_chat_send(result: str) -> None:
	CHAT_SEND.labels(result=result).inc()


def inc_chat_read(count: int = 1) -> None:
	if count > 0:
		CHAT_READ_UPDATES.inc(count)


def inc_chat_read_failure() -> None:
	CHAT_READ_UPDATE_FAILURES.inc()


def inc_duplicates_dropped(count: int = 1) -> None:
	if count > 0:
		CHAT_DUPLICATES_DROPPED.inc(count)


def inc_realtime_event(collection: str, event: str) -> None:
	CHAT_REALTIME_EVENTS.labels(collection=collection, event=event).inc()


def inc_conversation_refresh(outcome: str) -> None:
	CONVERSATION_REFRESHES.labels(outcome=outcome).inc()


def inc_create_conflict() -> None:
	CONVERSATION_CREATE_CONFLICTS.inc()


def inc_schema_fallback() -> None:
	CONVERSATION_SCHEMA_FALLBACKS.inc()


def inc_subscription_failure(collection: str) -> None:
	SUBSCRIPTION_FAILURES.labels(collection=collection).inc()


def inc_subscription_degraded(collection: str) -> None:
	SUBSCRIPTION_DEGRADED.labels(collection=collection).inc()


def set_unread_conversations(count: int) -> None:
	UNREAD_CONVERSATIONS.set(max(0, int(count)))
