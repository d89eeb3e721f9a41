import pytest

from dormchat.infra.memory_store import InMemoryStore
from dormchat.obs.logging import clear_context
from dormchat.settings import settings


_FAST_SETTINGS = {
    "chat_refresh_debounce_seconds": 0.0,
    "chat_refresh_min_interval_seconds": 0.0,
    "chat_subscription_retry_delay_seconds": 0.0,
    "chat_read_receipt_delay_seconds": 0.0,
    "chat_polling_fallback_enabled": False,
    "chat_polling_interval_seconds": 0.01,
}


@pytest.fixture(autouse=True)
def force_test_settings():
    """Zero out timers so scheduling tests do not sleep unless they opt in."""
    originals = {name: getattr(settings, name) for name in _FAST_SETTINGS}
    for name, value in _FAST_SETTINGS.items():
        setattr(settings, name, value)
    try:
        yield
    finally:
        for name, value in originals.items():
            setattr(settings, name, value)
        clear_context()


def profile(user_id: str, username: str | None = None, **extra) -> dict:
    row = {"id": user_id, "username": username or user_id.title(), "avatar_url": f"{user_id}.png", "is_deleted": False}
    row.update(extra)
    return row


def legacy_conversation(user_a: str, user_b: str, **extra) -> dict:
    first, second = sorted((user_a, user_b))
    row = {
        "conversation_id": f"{first}_{second}",
        "user1_id": user_a,
        "user2_id": user_b,
        "created_at": "2024-03-01T09:00:00+00:00",
    }
    row.update(extra)
    return row


def message(message_id: str, conversation_id: str, sender_id: str | None, content: str, minute: int, read_by=None) -> dict:
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": content,
        "created_at": f"2024-03-01T10:{minute:02d}:00+00:00",
        "read_by": [] if read_by is None else read_by,
    }


@pytest.fixture
def store() -> InMemoryStore:
    memory = InMemoryStore()
    memory.seed("profiles", [profile("alice"), profile("bob"), profile("carol")])
    return memory
