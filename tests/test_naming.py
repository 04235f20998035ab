from __future__ import annotations

import allure
import pytest

from remote_task.mailbox.naming import (
    Direction,
    Kind,
    StoreObject,
    decode_name,
    encode_name,
    new_task_id,
)

pytestmark = [
    allure.epic("Mailbox Protocol"),
    allure.feature("Object Naming"),
]


def test_encode_name_follows_wire_grammar() -> None:
    name = encode_name(1700000000123, "0a1b2c", Direction.IN, Kind.SIGNATURE)

    assert name == "1700000000123-0a1b2c.in.sig"


def test_decode_name_extracts_all_fields() -> None:
    decoded = decode_name("1700000000123-0a1b2c.out.err")

    assert decoded == StoreObject(
        name="1700000000123-0a1b2c.out.err",
        created_at_ms=1700000000123,
        task_id="0a1b2c",
        direction=Direction.OUT,
        kind=Kind.ERROR,
    )


def test_decode_name_accepts_any_word_token_as_task_id() -> None:
    decoded = decode_name("42-Task_ID_v2.in.dat")

    assert decoded is not None
    assert decoded.task_id == "Task_ID_v2"


@pytest.mark.parametrize(
    "name",
    [
        "",
        "index.html",
        "abc-0a1b.in.dat",
        "123-0a1b.in.txt",
        "123-0a1b.up.dat",
        "123-0a-1b.in.dat",
        "123-0a1b.in.dat.part",
        "123-0a1b.in.dat\n",
        "-0a1b.in.dat",
        ".123-0a1b.in.dat",
        "\u0661\u0662\u0663-0a1b.in.dat",
        "123-t\u00e4sk.in.dat",
    ],
)
def test_decode_name_rejects_names_outside_grammar(name: str) -> None:
    assert decode_name(name) is None


def test_encode_name_rejects_task_ids_with_delimiters() -> None:
    with pytest.raises(ValueError, match="word-character"):
        encode_name(1, "ab-cd", Direction.IN, Kind.DATA)
    with pytest.raises(ValueError, match="word-character"):
        encode_name(1, "ab.cd", Direction.IN, Kind.DATA)
    with pytest.raises(ValueError, match="word-character"):
        encode_name(1, "t\u00e4sk", Direction.IN, Kind.DATA)


def test_encode_name_accepts_plain_strings_for_enums() -> None:
    assert encode_name(5, "ff", "out", "dat") == "5-ff.out.dat"


def test_new_task_id_is_32_hex_chars_and_random() -> None:
    first = new_task_id()
    second = new_task_id()

    assert len(first) == 32
    assert all(char in "0123456789abcdef" for char in first)
    assert first != second
    assert decode_name(encode_name(1, first, Direction.IN, Kind.DATA)) is not None
