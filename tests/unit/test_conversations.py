import pytest

from conftest import legacy_conversation, message, profile

from dormchat.domain.chat.conversations import (
    ConversationListSynchronizer,
    filter_conversations,
    flag_product_deleted,
    list_conversations,
)
from dormchat.domain.chat.identity import ConversationResolver
from dormchat.domain.chat.models import ConversationRequest, ProductKind, ProductSnapshot
from dormchat.infra.memory_store import InMemoryStore
from dormchat.infra.store import StoreUnavailable


def seed_alice_bob(store):
    store.seed("conversations", [legacy_conversation("alice", "bob")])
    store.seed(
        "messages",
        [
            message("m1", "alice_bob", "bob", "is the lamp still available?", 1),
            message("m2", "alice_bob", "bob", "I can pick it up today", 2, read_by='["alice"]'),
            message("m3", "alice_bob", "alice", "yes it is", 3),
        ],
    )


@pytest.mark.asyncio
async def test_list_conversations_derives_read_state(store):
    seed_alice_bob(store)

    [summary] = await list_conversations(store, "alice")

    assert summary.conversation_id == "alice_bob"
    assert summary.kind == "legacy"
    assert summary.other_user.id == "bob"
    assert summary.other_user.username == "Bob"
    assert summary.unread_count == 1
    assert summary.is_mine is True
    assert summary.last_message == "yes it is"
    assert summary.last_message_read_by_other is False


@pytest.mark.asyncio
async def test_last_message_read_by_other(store):
    seed_alice_bob(store)
    await store.update("messages", [], {"read_by": ["alice", "bob"]})

    [for_alice] = await list_conversations(store, "alice")
    [for_bob] = await list_conversations(store, "bob")

    assert for_alice.last_message_read_by_other is True
    assert for_alice.unread_count == 0
    assert for_bob.is_mine is False
    assert for_bob.last_message_read_by_other is False


@pytest.mark.asyncio
async def test_json_encoded_read_by_is_normalised():
    store = InMemoryStore(read_by_as_json=True)
    store.seed("profiles", [profile("alice"), profile("bob")])
    seed_alice_bob(store)

    [summary] = await list_conversations(store, "alice")

    assert isinstance(store.rows("messages")[0]["read_by"], str)
    assert summary.unread_count == 1


@pytest.mark.asyncio
async def test_conversation_without_messages(store):
    store.seed("conversations", [legacy_conversation("alice", "carol", last_message="hi", last_message_at="2024-03-01T08:00:00+00:00")])

    [summary] = await list_conversations(store, "alice")

    assert summary.unread_count == 0
    assert summary.is_mine is False
    assert summary.last_message == "hi"


@pytest.mark.asyncio
@pytest.mark.parametrize("deleted_how", ["flagged", "missing"])
async def test_deleted_account_sentinel(deleted_how):
    store = InMemoryStore()
    profiles = [profile("alice")]
    if deleted_how == "flagged":
        profiles.append(profile("bob", is_deleted=True))
    store.seed("profiles", profiles)
    seed_alice_bob(store)

    [summary] = await list_conversations(store, "alice")

    assert summary.other_user.id is None
    assert summary.other_user.username == "Deleted Account"
    assert summary.other_user.avatar_url == "default-avatar.png"
    assert summary.other_user.is_deleted
    assert summary.can_send is False


@pytest.mark.asyncio
async def test_list_is_ordered_by_latest_message(store):
    seed_alice_bob(store)
    store.seed("conversations", [legacy_conversation("alice", "carol")])
    store.seed("messages", [message("c1", "alice_carol", "carol", "later", 30)])

    summaries = await list_conversations(store, "alice")

    assert [s.conversation_id for s in summaries] == ["alice_carol", "alice_bob"]


@pytest.mark.asyncio
async def test_only_own_conversations_are_listed(store):
    seed_alice_bob(store)
    store.seed("conversations", [legacy_conversation("bob", "carol")])

    summaries = await list_conversations(store, "alice")

    assert [s.conversation_id for s in summaries] == ["alice_bob"]


@pytest.mark.asyncio
async def test_fetch_errors_propagate(store):
    store.fail_next("query", StoreUnavailable("offline"))

    with pytest.raises(StoreUnavailable):
        await list_conversations(store, "alice")


@pytest.mark.asyncio
async def test_search_filters_by_name_and_product(store):
    seed_alice_bob(store)
    lamp = ProductSnapshot(product_id="p9", name="Mini Fridge", kind=ProductKind.SELL_ITEM)
    await ConversationResolver(store).find_or_create(ConversationRequest("alice", "carol", product=lamp))
    summaries = await list_conversations(store, "alice")

    assert [s.conversation_id for s in filter_conversations(summaries, "FRIDGE")] == ["product_p9_alice_carol"]
    assert [s.conversation_id for s in filter_conversations(summaries, "bo")] == ["alice_bob"]
    assert len(filter_conversations(summaries, "  ")) == 2
    assert filter_conversations(summaries, "nobody") == []


@pytest.mark.asyncio
async def test_refresh_only_notifies_on_fingerprint_change(store):
    seed_alice_bob(store)
    sync = ConversationListSynchronizer(store, "alice")
    notified = []
    sync.changed.connect(notified.append)

    assert await sync.refresh() is True
    assert await sync.refresh() is False
    assert len(notified) == 1
    assert sync.loaded

    await store.insert("messages", message("m4", "alice_bob", "bob", "great", 4))
    assert await sync.refresh() is True
    assert notified[-1][0].unread_count == 2
    await sync.close()


@pytest.mark.asyncio
async def test_burst_of_refresh_requests_fetches_once(store):
    seed_alice_bob(store)
    sync = ConversationListSynchronizer(store, "alice", debounce=0.05, min_interval=0.2)

    for _ in range(10):
        sync.request_refresh()
    await sync.flush()

    assert sync.fetches == 1
    assert len(sync.conversations) == 1
    await sync.close()


@pytest.mark.asyncio
async def test_realtime_message_triggers_refresh(store):
    seed_alice_bob(store)
    sync = ConversationListSynchronizer(store, "alice")
    await sync.start()
    await sync.wait_ready()
    assert sync.conversations[0].unread_count == 1

    await store.insert("messages", message("m4", "alice_bob", "bob", "are you there?", 4))
    await sync.flush()

    assert sync.conversations[0].unread_count == 2
    assert sync.conversations[0].last_message == "are you there?"
    await sync.close()
    assert store.active_subscriptions() == []


@pytest.mark.asyncio
async def test_product_deleted_flag_triggers_refresh(store):
    lamp = ProductSnapshot(product_id="p1", name="Desk lamp")
    await ConversationResolver(store).find_or_create(ConversationRequest("alice", "bob", product=lamp))
    sync = ConversationListSynchronizer(store, "alice")
    await sync.start()
    await sync.wait_ready()
    assert sync.conversations[0].product.deleted is False

    assert await flag_product_deleted(store, "p1") == 1
    await sync.flush()

    assert sync.conversations[0].product.deleted is True
    await sync.close()


@pytest.mark.asyncio
async def test_scheduled_refresh_failure_is_reported(store):
    seed_alice_bob(store)
    sync = ConversationListSynchronizer(store, "alice")
    failures = []
    sync.failed.connect(failures.append)
    store.fail_next("query", StoreUnavailable("offline"))

    sync.request_refresh()
    await sync.flush()

    assert len(failures) == 1
    assert isinstance(failures[0], StoreUnavailable)
    assert not sync.loaded
    await sync.close()
