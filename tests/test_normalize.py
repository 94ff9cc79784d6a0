import pytest

from constants import ROOM_CAPACITY_DEFAULT, ROOM_CAPACITY_LOCATION
from services.errors import InvalidInput
from services.normalize import (
    is_location_room,
    normalize_room_id,
    normalize_username,
    room_capacity,
    sanitize_message,
)


def test_username_is_trimmed_and_lowercased():
    assert normalize_username("  Alice ") == "alice"


@pytest.mark.parametrize("value", [None, "", "   ", "a", "x" * 21, "bad\nname", 42])
def test_invalid_usernames(value):
    with pytest.raises(InvalidInput):
        normalize_username(value)


def test_room_id_is_uppercased():
    assert normalize_room_id(" lobby ") == "LOBBY"


def test_location_rooms():
    assert is_location_room("LOC_ABC")
    assert not is_location_room("LOC_")
    assert not is_location_room("LOBBY")
    assert room_capacity("LOC_ABC") == ROOM_CAPACITY_LOCATION
    assert room_capacity("LOBBY") == ROOM_CAPACITY_DEFAULT


def test_message_is_escaped():
    assert sanitize_message(" <b>hi</b> ") == "&lt;b&gt;hi&lt;/b&gt;"


@pytest.mark.parametrize("value", [None, "", "   ", "x" * 1001])
def test_invalid_messages(value):
    with pytest.raises(InvalidInput):
        sanitize_message(value)
