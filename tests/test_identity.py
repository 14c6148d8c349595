"""Tests for identity and formatting helpers."""

import pytest

from chatroom_rtc.identity import (
    USER_COLORS,
    display_name,
    format_file_size,
    user_color,
    user_id_from_name,
)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Alice", "alice"),
        ("  Ada   Lovelace ", "ada-lovelace"),
        ("Grace\tHopper", "grace-hopper"),
    ],
)
def test_user_id_from_name(name, expected):
    assert user_id_from_name(name) == expected


def test_display_name_capitalises_words():
    assert display_name("ada-lovelace") == "Ada Lovelace"
    assert display_name("bob") == "Bob"


def test_user_color_is_stable_and_from_palette():
    assert user_color("alice") == user_color("alice")
    assert user_color("alice") in USER_COLORS
    assert len({user_color(f"user-{i}") for i in range(50)}) > 1


@pytest.mark.parametrize(
    "num_bytes, expected",
    [
        (0, "0 Bytes"),
        (512, "512 Bytes"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (10 * 1024 * 1024, "10 MB"),
    ],
)
def test_format_file_size(num_bytes, expected):
    assert format_file_size(num_bytes) == expected
