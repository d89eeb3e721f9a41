import asyncio

import pytest

from dormchat.domain.chat.exceptions import Blocked, BlockDirection, CannotMessageSelf
from dormchat.domain.chat.identity import (
    ConversationResolver,
    SchemaCache,
    SchemaVariant,
    resolve_legacy_id,
    resolve_product_centric_id,
)
from dormchat.domain.chat.models import (
    ConversationRequest,
    LegacyConversation,
    ProductConversation,
    ProductKind,
    ProductSnapshot,
)
from dormchat.infra.memory_store import InMemoryStore
from dormchat.infra.store import StoreUnavailable


LEGACY_COLUMNS = {
    "conversation_id",
    "user1_id",
    "user2_id",
    "last_message",
    "last_message_at",
    "created_at",
    "updated_at",
}


def lamp(name: str = "Desk lamp") -> ProductSnapshot:
    return ProductSnapshot(product_id="p1", name=name, kind=ProductKind.SELL_ITEM, price=12.5, location="Dorm B")


class InterleavingStore(InMemoryStore):
    """Yields after every read so two callers can interleave like two devices."""

    async def query(self, *args, **kwargs):
        rows = await super().query(*args, **kwargs)
        await asyncio.sleep(0)
        return rows


@pytest.mark.parametrize("pair", [("alice", "bob"), ("b", "a"), ("u-10", "u-9"), ("same", "same")])
def test_legacy_id_is_commutative(pair):
    a, b = pair
    assert resolve_legacy_id(a, b) == resolve_legacy_id(b, a)


def test_legacy_id_format():
    assert resolve_legacy_id("bob", "alice") == "alice_bob"


def test_product_centric_id_keeps_buyer_seller_order():
    assert resolve_product_centric_id("p1", "alice", "bob") == "product_p1_alice_bob"
    assert resolve_product_centric_id("p1", "bob", "alice") != resolve_product_centric_id("p1", "alice", "bob")


@pytest.mark.asyncio
async def test_find_or_create_legacy_is_idempotent(store):
    resolver = ConversationResolver(store)

    first = await resolver.find_or_create(ConversationRequest("bob", "alice"))
    second = await resolver.find_or_create(ConversationRequest("alice", "bob"))

    assert isinstance(first, LegacyConversation)
    assert first.conversation_id == second.conversation_id == "alice_bob"
    assert len(store.rows("conversations")) == 1
    assert store.count_calls("insert", "conversations") == 1


@pytest.mark.asyncio
async def test_find_or_create_product_centric(store):
    resolver = ConversationResolver(store)

    conversation = await resolver.find_or_create(ConversationRequest("alice", "bob", product=lamp()))

    assert isinstance(conversation, ProductConversation)
    assert conversation.conversation_id == "product_p1_alice_bob"
    assert conversation.buyer_id == "alice"
    assert conversation.seller_id == "bob"
    assert conversation.product.name == "Desk lamp"
    row = store.rows("conversations")[0]
    assert row["user1_id"] == "alice"
    assert row["user2_id"] == "bob"
    assert row["product_price"] == 12.5
    assert resolver.schema.variant == SchemaVariant.PRODUCT_CENTRIC


@pytest.mark.asyncio
async def test_existing_product_snapshot_is_not_overwritten(store):
    resolver = ConversationResolver(store)
    await resolver.find_or_create(ConversationRequest("alice", "bob", product=lamp()))

    again = await resolver.find_or_create(ConversationRequest("alice", "bob", product=lamp("Renamed lamp")))

    assert again.product.name == "Desk lamp"
    assert store.rows("conversations")[0]["product_name"] == "Desk lamp"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("blocker", "blocked", "direction"),
    [
        ("alice", "bob", BlockDirection.BLOCKED_BY_ME),
        ("bob", "alice", BlockDirection.BLOCKED_ME),
    ],
)
async def test_blocked_pair_cannot_create(store, blocker, blocked, direction):
    store.seed("blocked_users", [{"blocker_id": blocker, "blocked_id": blocked}])
    resolver = ConversationResolver(store)

    with pytest.raises(Blocked) as excinfo:
        await resolver.find_or_create(ConversationRequest("alice", "bob", product=lamp()))

    assert excinfo.value.direction == direction
    assert store.count_calls("insert") == 0


@pytest.mark.asyncio
async def test_blocked_pair_cannot_reuse_existing(store):
    resolver = ConversationResolver(store)
    await resolver.find_or_create(ConversationRequest("alice", "bob"))
    store.seed("blocked_users", [{"blocker_id": "bob", "blocked_id": "alice"}])

    with pytest.raises(Blocked):
        await resolver.find_or_create(ConversationRequest("alice", "bob"))


@pytest.mark.asyncio
async def test_self_conversation_is_refused(store):
    with pytest.raises(CannotMessageSelf):
        await ConversationResolver(store).find_or_create(ConversationRequest("alice", "alice"))


@pytest.mark.asyncio
async def test_concurrent_creation_converges_on_one_row():
    racing = InterleavingStore()
    device_a = ConversationResolver(racing)
    device_b = ConversationResolver(racing)

    first, second = await asyncio.gather(
        device_a.find_or_create(ConversationRequest("alice", "bob")),
        device_b.find_or_create(ConversationRequest("bob", "alice")),
    )

    assert first.conversation_id == second.conversation_id == "alice_bob"
    assert len(racing.rows("conversations")) == 1
    # Both devices attempted the insert; the loser recovered from the conflict.
    assert racing.count_calls("insert", "conversations") == 2


@pytest.mark.asyncio
async def test_missing_product_columns_fall_back_to_legacy():
    legacy_only = InMemoryStore(columns={"conversations": LEGACY_COLUMNS})
    schema = SchemaCache()
    resolver = ConversationResolver(legacy_only, schema=schema)

    conversation = await resolver.find_or_create(ConversationRequest("alice", "bob", product=lamp()))

    assert isinstance(conversation, LegacyConversation)
    assert conversation.conversation_id == "alice_bob"
    assert schema.variant == SchemaVariant.LEGACY

    # The detected variant is remembered: one rejected product-centric insert,
    # then only legacy inserts.
    await resolver.find_or_create(ConversationRequest("alice", "carol", product=lamp()))
    assert legacy_only.count_calls("insert", "conversations") == 3
    assert [row["conversation_id"] for row in legacy_only.rows("conversations")] == ["alice_bob", "alice_carol"]


@pytest.mark.asyncio
async def test_transport_errors_propagate(store):
    store.fail_next("query", StoreUnavailable("offline"), collection="conversations")

    with pytest.raises(StoreUnavailable):
        await ConversationResolver(store).find_or_create(ConversationRequest("alice", "bob"))
