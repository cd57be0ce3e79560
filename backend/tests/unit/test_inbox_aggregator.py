from datetime import datetime, timedelta, timezone

import pytest

from marketchat.domain.conversations.aggregator import aggregate, aggregate_rows
from marketchat.domain.conversations.exceptions import InvalidConversationKey
from marketchat.domain.conversations.models import ConversationKey, ItemSnapshot, Message, ProfileSnapshot

ALICE = "11111111-1111-4111-8111-111111111111"
BOB = "22222222-2222-4222-8222-222222222222"
CAROL = "33333333-3333-4333-8333-333333333333"
ITEM_1 = "aaaaaaaa-0000-4000-8000-000000000001"
ITEM_2 = "aaaaaaaa-0000-4000-8000-000000000002"
OFFER_ITEM = "bbbbbbbb-0000-4000-8000-000000000001"

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
PROFILES = {
    ALICE: ProfileSnapshot(username="alice", avatar_url="https://cdn.example/alice.png"),
    BOB: ProfileSnapshot(username="bob", avatar_url="https://cdn.example/bob.png"),
    CAROL: ProfileSnapshot(username="carol", avatar_url=None),
}
ITEMS = {
    ITEM_1: ItemSnapshot(id=ITEM_1, title="Road bike", image="https://cdn.example/bike.jpg"),
    ITEM_2: ItemSnapshot(id=ITEM_2, title="Desk lamp", image="https://cdn.example/lamp.jpg"),
    OFFER_ITEM: ItemSnapshot(id=OFFER_ITEM, title="Guitar", image="https://cdn.example/guitar.jpg"),
}


def _msg(msg_id, sender, receiver, t, content="hello", **kwargs):
    item_id = kwargs.pop("item_id", None)
    offer_item_id = kwargs.pop("offer_item_id", None)
    return Message(
        id=msg_id,
        sender_id=sender,
        receiver_id=receiver,
        content=content,
        created_at=BASE + timedelta(seconds=t),
        item_id=item_id,
        offer_item_id=offer_item_id,
        sender=PROFILES.get(sender),
        receiver=PROFILES.get(receiver),
        item=ITEMS.get(item_id) if item_id else None,
        offer_item=ITEMS.get(offer_item_id) if offer_item_id else None,
        **kwargs,
    )


def _key(a, b):
    return ConversationKey.from_participants(a, b).conversation_id


def test_single_pair_unread_for_viewer():
    messages = [
        _msg("m1", ALICE, BOB, 1, "hi", read=False),
        _msg("m2", BOB, ALICE, 2, "hey", read=False),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.id == _key(ALICE, BOB)
    assert conversation.other_user_id == BOB
    assert conversation.other_user_name == "bob"
    assert conversation.last_message == "hey"
    assert conversation.unread_count == 1


def test_newest_item_message_sets_item_context():
    messages = [
        _msg("m1", ALICE, BOB, 1, "hi"),
        _msg("m2", BOB, ALICE, 2, "hey"),
        _msg("m3", ALICE, BOB, 3, "is the bike still available?", item_id=ITEM_1),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.recent_item_id == ITEM_1
    assert conversation.recent_item_title == "Road bike"
    assert conversation.recent_item_image == "https://cdn.example/bike.jpg"
    assert conversation.last_message == "is the bike still available?"


def test_item_recency_follows_created_at_not_insertion_order():
    messages = [
        _msg("m1", ALICE, BOB, 1, "hi"),
        _msg("m2", BOB, ALICE, 2, "hey"),
        _msg("m3", ALICE, BOB, 3, "bike?", item_id=ITEM_1),
        _msg("m4", BOB, ALICE, 2.5, "lamp?", item_id=ITEM_2),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.recent_item_title == "Road bike"
    assert conversation.last_message == "bike?"


def test_last_message_and_item_trackers_are_independent():
    messages = [
        _msg("m1", BOB, ALICE, 1, "lamp?", item_id=ITEM_2),
        _msg("m2", ALICE, BOB, 5, "sure, tomorrow works"),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.last_message == "sure, tomorrow works"
    assert conversation.recent_item_title == "Desk lamp"


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_last_message_is_newest_regardless_of_order(order):
    pair = [_msg("m1", ALICE, BOB, 1, "older"), _msg("m2", BOB, ALICE, 2, "newer")]
    messages = [pair[i] for i in order]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.last_message == "newer"
    assert conversation.last_message_time == BASE + timedelta(seconds=2)


def test_aggregation_is_idempotent():
    messages = [
        _msg("m1", ALICE, BOB, 1, "hi"),
        _msg("m2", CAROL, ALICE, 4, "still selling?", item_id=ITEM_2),
        _msg("m3", BOB, ALICE, 2, "offer", offer_item_id=OFFER_ITEM),
        _msg("m4", ALICE, CAROL, 3, "yes"),
    ]

    first = aggregate(messages, ALICE)
    second = aggregate(list(messages), ALICE)
    shuffled = aggregate(list(reversed(messages)), ALICE)

    assert first == second
    assert first == shuffled
    assert [c.other_user_id for c in first] == [CAROL, BOB]


def test_equal_timestamps_resolve_deterministically():
    messages = [_msg("m-a", ALICE, BOB, 1, "first"), _msg("m-b", BOB, ALICE, 1, "second")]

    forward = aggregate(messages, ALICE)
    backward = aggregate(list(reversed(messages)), ALICE)

    assert forward == backward
    assert forward[0].last_message_id == "m-b"


def test_sorted_by_last_message_time_descending():
    messages = [
        _msg("m1", ALICE, BOB, 10, "bob"),
        _msg("m2", CAROL, ALICE, 20, "carol"),
    ]

    conversations = aggregate(messages, ALICE)

    assert [c.other_user_id for c in conversations] == [CAROL, BOB]


def test_offer_flag_is_sticky():
    messages = [
        _msg("m1", BOB, ALICE, 1, "trade my guitar?", offer_item_id=OFFER_ITEM),
        _msg("m2", ALICE, BOB, 2, "let me think"),
        _msg("m3", BOB, ALICE, 3, "ok"),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert conversation.has_offer
    assert conversation.offer_item_title == "Guitar"
    assert conversation.offer_item_image == "https://cdn.example/guitar.jpg"
    assert conversation.last_message == "ok"


def test_unread_counts_only_messages_received_by_viewer():
    messages = [
        _msg("m1", ALICE, BOB, 1, "mine", read=False),
        _msg("m2", BOB, ALICE, 2, "theirs", read=False),
        _msg("m3", BOB, ALICE, 3, "offer", read=False, offer_item_id=OFFER_ITEM),
        _msg("m4", BOB, ALICE, 4, "seen", read=True),
    ]

    [as_alice] = aggregate(messages, ALICE)
    [as_bob] = aggregate(messages, BOB)

    assert as_alice.unread_count == 2
    assert as_alice.unread_offer_count == 1
    assert as_bob.unread_count == 1
    assert as_bob.unread_offer_count == 0


def test_unread_counts_are_isolated_per_conversation():
    messages = [
        _msg("m1", BOB, ALICE, 1, "a"),
        _msg("m2", BOB, ALICE, 2, "b"),
        _msg("m3", CAROL, ALICE, 3, "c"),
    ]

    by_id = {c.other_user_id: c for c in aggregate(messages, ALICE)}

    assert by_id[BOB].unread_count == 2
    assert by_id[CAROL].unread_count == 1


def test_malformed_messages_are_dropped_not_fatal():
    messages = [
        _msg("m1", ALICE, "not-a-uuid", 1, "bad"),
        _msg("m2", ALICE, ALICE, 2, "self"),
        _msg("m3", BOB, CAROL, 3, "not mine"),
        "garbage",
        _msg("m4", BOB, ALICE, 4, "good"),
    ]

    conversations = aggregate(messages, ALICE)

    assert [c.last_message for c in conversations] == ["good"]


def test_mixed_timestamp_kinds_drop_only_the_bad_message():
    naive = Message(
        id="m0",
        sender_id=BOB,
        receiver_id=ALICE,
        content="naive",
        created_at=datetime(2024, 5, 1, 13, 0),
    )
    naive_only = Message(
        id="m9",
        sender_id=ALICE,
        receiver_id="44444444-4444-4444-8444-444444444444",
        content="naive",
        created_at=datetime(2024, 5, 1, 14, 0),
    )
    messages = [_msg("m1", BOB, ALICE, 1, "aware"), naive, _msg("m2", ALICE, CAROL, 2, "other"), naive_only]

    by_id = {c.other_user_id: c for c in aggregate(messages, ALICE)}

    assert by_id[BOB].last_message == "aware"
    assert by_id[CAROL].last_message == "other"
    assert set(by_id) == {BOB, CAROL}


def test_unhashable_id_drops_only_that_message():
    messages = [_msg("m1", BOB, ALICE, 1, "kept"), _msg(["x"], CAROL, ALICE, 2, "bad id")]

    conversations = aggregate(messages, ALICE)

    assert [c.other_user_id for c in conversations] == [BOB]
    assert conversations[0].last_message == "kept"


def test_duplicate_ids_are_counted_once():
    duplicated = _msg("m1", BOB, ALICE, 1, "once", read=False)

    [conversation] = aggregate([duplicated, duplicated], ALICE)

    assert conversation.unread_count == 1


def test_profile_comes_from_newest_message_with_a_profile():
    old = _msg("m1", BOB, ALICE, 1, "hi")
    renamed = Message(
        id="m2",
        sender_id=BOB,
        receiver_id=ALICE,
        content="new name",
        created_at=BASE + timedelta(seconds=2),
        sender=ProfileSnapshot(username="bobby", avatar_url=None),
    )
    bare = Message(id="m3", sender_id=ALICE, receiver_id=BOB, content="no profile", created_at=BASE + timedelta(seconds=3))

    [conversation] = aggregate([renamed, bare, old], ALICE)

    assert conversation.other_user_name == "bobby"
    assert conversation.other_user_avatar is None


def test_missing_profile_falls_back_to_default_name():
    message = Message(id="m1", sender_id=BOB, receiver_id=ALICE, content="hi", created_at=BASE)

    [conversation] = aggregate([message], ALICE)

    assert conversation.other_user_name == "User"


def test_attachment_only_message_preview():
    message = Message(
        id="m1",
        sender_id=BOB,
        receiver_id=ALICE,
        content="",
        created_at=BASE,
        attachment_url="https://cdn.example/photo.jpg",
    )

    [conversation] = aggregate([message], ALICE)

    assert conversation.last_message == "[attachment]"


def test_overlay_flags_follow_most_recent_message():
    messages = [
        _msg("m1", BOB, ALICE, 1, "old", archived=True, silenced=True),
        _msg("m2", ALICE, BOB, 2, "new", archived=False, silenced=False),
    ]

    [conversation] = aggregate(messages, ALICE)

    assert not conversation.archived
    assert not conversation.silenced


def test_invalid_viewer_rejected():
    with pytest.raises(InvalidConversationKey):
        aggregate([], "viewer")


def test_aggregate_rows_validates_at_boundary():
    rows = [
        {
            "id": "m1",
            "sender_id": BOB,
            "receiver_id": ALICE,
            "content": "from the store",
            "created_at": "2024-05-01T12:00:00+00:00",
            "item_id": ITEM_1,
            "items": {"id": ITEM_1, "title": "Road bike", "images": ["a.jpg", "b.jpg"]},
            "sender": {"username": "bob", "avatar_url": None},
            "read": None,
        },
        {"id": "m2", "sender_id": BOB, "receiver_id": ALICE, "created_at": "2024-05-01T12:01:00+00:00"},
        {"id": "m3", "sender_id": BOB},
    ]

    [conversation] = aggregate_rows(rows, ALICE)

    assert conversation.last_message == "from the store"
    assert conversation.recent_item_image == "a.jpg"
    assert conversation.unread_count == 1
