import asyncio
import json
import logging

import pytest

from conftest import legacy_conversation, message

from dormchat.domain.chat.exceptions import NotAuthenticated, SendRejected, user_message
from dormchat.domain.chat.models import Participant, ProductKind, ProductSnapshot
from dormchat.domain.chat.service import ChatClient
from dormchat.infra.memory_store import InMemoryStore
from dormchat.infra.store import eq
from dormchat.obs.logging import JSONLogFormatter


class InterleavingStore(InMemoryStore):
    async def query(self, *args, **kwargs):
        rows = await super().query(*args, **kwargs)
        await asyncio.sleep(0)
        return rows


def desk_lamp() -> ProductSnapshot:
    return ProductSnapshot(product_id="p42", name="Desk lamp", kind=ProductKind.SELL_ITEM, price=15.0)


@pytest.mark.asyncio
async def test_buyer_messages_new_listing(store):
    buyer = ChatClient(store)
    seller = ChatClient(store)
    await buyer.sign_in("alice")
    await seller.sign_in("bob")

    chat = await buyer.open_conversation(None, Participant(id="bob", username="Bob"), product=desk_lamp())
    await chat.send("hello")

    assert chat.conversation_id == "product_p42_alice_bob"
    assert [m.content for m in chat.messages] == ["hello"]
    [summary] = await buyer.list_conversations()
    assert summary.is_mine is True
    assert summary.last_message_read_by_other is False
    assert summary.product.name == "Desk lamp"

    [seller_view] = await seller.list_conversations()
    assert seller_view.unread_count == 1
    await seller.open_summary(seller_view)
    await seller.unread.flush()
    assert seller.get_unread_conversation_count() == 0

    [summary] = await buyer.list_conversations()
    assert summary.last_message_read_by_other is True

    await buyer.close()
    await seller.close()


@pytest.mark.asyncio
async def test_deleted_seller_shows_sentinel_and_blocks_sending(store):
    store.seed("conversations", [legacy_conversation("alice", "bob")])
    store.seed("messages", [message("m1", "alice_bob", "bob", "sold, sorry", 1, read_by=["alice"])])
    client = ChatClient(store)
    await client.sign_in("alice")

    await store.update("profiles", [eq("id", "bob")], {"is_deleted": True})
    [summary] = await client.list_conversations()

    assert summary.other_user.id is None
    assert summary.other_user.username == "Deleted Account"
    assert summary.can_send is False

    chat = await client.open_summary(summary)
    with pytest.raises(SendRejected) as excinfo:
        await chat.send("are you still there?")
    assert user_message(excinfo.value) == "This account has been deleted."
    await client.close()


@pytest.mark.asyncio
async def test_two_clients_racing_to_create_share_one_conversation():
    racing = InterleavingStore()
    first = ChatClient(racing)
    second = ChatClient(racing)
    await first.sign_in("alice")
    await second.sign_in("bob")

    a, b = await asyncio.gather(
        first.find_or_create_conversation("bob"),
        second.find_or_create_conversation("alice"),
    )

    assert a.conversation_id == b.conversation_id == "alice_bob"
    assert len(racing.rows("conversations")) == 1
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_requires_sign_in(store):
    client = ChatClient(store)

    with pytest.raises(NotAuthenticated):
        await client.list_conversations()
    with pytest.raises(NotAuthenticated):
        await client.open_conversation(None, Participant(id="bob", username="Bob"))


@pytest.mark.asyncio
async def test_opening_another_conversation_disposes_the_previous_one(store):
    store.seed("conversations", [legacy_conversation("alice", "bob"), legacy_conversation("alice", "carol")])
    client = ChatClient(store)
    await client.sign_in("alice")

    first = await client.open_conversation("alice_bob", Participant(id="bob", username="Bob"))
    await first.subscription.wait_ready()
    second = await client.open_conversation("alice_carol", Participant(id="carol", username="Carol"))
    await second.subscription.wait_ready()

    subscribed = [sub.filters for sub in store.active_subscriptions("messages") if sub.filters]
    assert len(subscribed) == 1
    assert subscribed[0][0].value == "alice_carol"
    assert client.active_conversation is second
    await client.close()


@pytest.mark.asyncio
async def test_sign_out_zeroes_badge_before_teardown(store):
    store.seed("conversations", [legacy_conversation("alice", "bob")])
    store.seed("messages", [message("m1", "alice_bob", "bob", "hey", 1)])
    client = ChatClient(store)
    await client.sign_in("alice")
    assert client.get_unread_conversation_count() == 1

    seen = []
    client.subscribe_unread(seen.append)
    sign_out = asyncio.create_task(client.sign_out())
    await asyncio.sleep(0)
    assert client.get_unread_conversation_count() == 0

    await sign_out
    assert seen == [0]
    assert client.unread.loaded is False


@pytest.mark.asyncio
async def test_conversation_list_search(store):
    store.seed("conversations", [legacy_conversation("alice", "bob"), legacy_conversation("alice", "carol")])
    client = ChatClient(store)
    await client.sign_in("alice")

    synchronizer = await client.watch_conversations()

    assert len(synchronizer.conversations) == 2
    assert [s.other_user.username for s in client.search_conversations("car")] == ["Carol"]
    await client.close()


def logged_user_id():
    record = logging.LogRecord("dormchat.test", logging.INFO, __file__, 1, "session line", (), None)
    return json.loads(JSONLogFormatter().format(record)).get("user_id")


@pytest.mark.asyncio
async def test_sign_out_unbinds_user_from_log_context(store):
    client = ChatClient(store)
    await client.sign_in("alice")
    assert logged_user_id() == "alice"

    await client.sign_out()

    assert logged_user_id() is None
