import pytest

from blocks import BlockList
from chat_errors import Conflict, Forbidden, NotFound


@pytest.fixture
def blocks(db, gateway):
    return BlockList(lambda: db, gateway)


def test_block_status_is_directed(blocks, users):
    alice, bob = users["alice"], users["bob"]
    status = blocks.block(alice, bob)
    assert status == {"userId": bob, "blocked": True, "blockedBy": False}
    assert blocks.status(bob, alice) == {"userId": alice, "blocked": False, "blockedBy": True}


def test_cannot_block_self_or_nobody(blocks, users):
    with pytest.raises(Conflict):
        blocks.block(users["alice"], users["alice"])
    with pytest.raises(NotFound):
        blocks.block(users["alice"], 999)


def test_block_stops_direct_messages_both_ways(blocks, gateway, users):
    alice, bob = users["alice"], users["bob"]
    conv, _ = gateway.get_or_create_direct(alice, bob)
    blocks.block(alice, bob)
    with pytest.raises(Forbidden, match="You cannot message this user"):
        gateway.send_message(conv["id"], bob, text="hello?")
    with pytest.raises(Forbidden):
        gateway.send_message(conv["id"], alice, text="bye")

    blocks.unblock(alice, bob)
    assert gateway.send_message(conv["id"], bob, text="hello again")["text"] == "hello again"


def test_block_and_unblock_leave_a_system_note(blocks, gateway, users):
    alice, bob = users["alice"], users["bob"]
    conv, _ = gateway.get_or_create_direct(alice, bob)
    blocks.block(alice, bob)
    blocks.block(alice, bob)
    blocks.unblock(alice, bob)
    notes = [(m["kind"], m["author"], m["text"]) for m in gateway.list_messages(conv["id"], alice)]
    assert notes == [
        ("system", "System", "alice blocked bob"),
        ("system", "System", "alice unblocked bob"),
    ]


def test_blocks_do_not_affect_channels(blocks, gateway, users):
    alice, bob = users["alice"], users["bob"]
    room = gateway.create_channel("nexphere", "Room", "the-room", alice)
    gateway.join(room["id"], bob)
    blocks.block(alice, bob)
    assert gateway.send_message(room["id"], bob, text="still here")["author"] == "bob"


def test_list_blocked(blocks, users):
    blocks.block(users["alice"], users["carol"])
    blocks.block(users["alice"], users["bob"])
    assert [u["username"] for u in blocks.list_blocked(users["alice"])] == ["bob", "carol"]
    assert blocks.list_blocked(users["bob"]) == []


def test_unblock_without_block_is_harmless(blocks, users):
    status = blocks.unblock(users["alice"], users["bob"])
    assert status["blocked"] is False
