import pytest

from dormchat.domain.chat.read_state import decode_read_by, encode_read_by, is_unread_for, with_reader


@pytest.mark.parametrize(
    "raw",
    [
        ["u1", "u2"],
        ("u1", "u2"),
        '["u1","u2"]',
        b'["u1", "u2"]',
    ],
)
def test_decode_read_by_accepts_lists_and_json(raw):
    assert decode_read_by(raw) == {"u1", "u2"}


@pytest.mark.parametrize("raw", [None, "", "   ", "not json", '{"u1": true}', '"u1"', "[", 42])
def test_decode_read_by_degrades_to_empty(raw):
    assert decode_read_by(raw) == frozenset()


def test_decode_read_by_skips_null_members():
    assert decode_read_by(["u1", None, ""]) == {"u1"}


def test_decode_read_by_returns_a_copy():
    raw = ["u1"]
    decoded = decode_read_by(raw)
    raw.append("u2")
    assert decoded == {"u1"}


def test_encode_read_by_is_sorted_and_unique():
    assert encode_read_by(["b", "a", "b"]) == ["a", "b"]


def test_with_reader_adds_to_json_string():
    assert with_reader('["u1"]', "u2") == {"u1", "u2"}


def test_is_unread_for():
    assert is_unread_for("me", "them", None)
    assert is_unread_for("me", "them", "garbage")
    assert not is_unread_for("me", "them", '["me"]')
    assert not is_unread_for("me", "me", [])
    # Deleted senders still count as someone else.
    assert is_unread_for("me", None, [])
