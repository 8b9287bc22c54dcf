import errno

import pytest

from efivarkit.errors import EfiError, error_clear, error_entries
from efivarkit.guid import (
    ZERO_GUID,
    Guid,
    guid_cmp,
    guid_to_id_guid,
    guid_to_str,
    str_to_guid,
)

TEXT = "84be9c3e-8a32-42c0-891c-4cd3b072becc"


@pytest.fixture(autouse=True)
def _clear():
    error_clear()
    yield
    error_clear()


def test_parse_fields():
    guid = str_to_guid(TEXT)
    assert guid.a == 0x84BE9C3E
    assert guid.b == 0x8A32
    assert guid.c == 0x42C0
    assert guid.d == 0x891C
    assert guid.e == bytes.fromhex("4cd3b072becc")


def test_round_trip_text():
    assert guid_to_str(str_to_guid(TEXT)) == TEXT
    assert str(str_to_guid(TEXT)) == TEXT


def test_upper_case_accepted():
    assert str(str_to_guid(TEXT.upper())) == TEXT


def test_braces_accepted():
    assert str_to_guid("{" + TEXT + "}") == str_to_guid(TEXT)


def test_trailing_whitespace_accepted():
    assert str_to_guid(TEXT + "\n") == str_to_guid(TEXT)


def test_wire_bytes():
    assert str_to_guid(TEXT).to_bytes() == bytes.fromhex("3e9cbe84328ac042891c4cd3b072becc")


def test_bytes_round_trip():
    guid = str_to_guid(TEXT)
    assert Guid.from_bytes(guid.to_bytes()) == guid


def test_from_bytes_too_short():
    with pytest.raises(ValueError):
        Guid.from_bytes(b"\x00" * 15)


@pytest.mark.parametrize(
    "text",
    [
        TEXT[:-1],
        TEXT + "x",
        TEXT.replace("-", "_", 1),
        "g" + TEXT[1:],
        "[" + TEXT + "]",
        TEXT[:9] + "+" + TEXT[10:],
        TEXT[:24] + "1_" + TEXT[26:],
    ],
)
def test_invalid_text_rejected(text):
    with pytest.raises(EfiError) as info:
        str_to_guid(text)
    assert info.value.errno == errno.EINVAL


def test_invalid_text_recorded():
    with pytest.raises(EfiError):
        str_to_guid("nope")
    assert len(error_entries()) == 1
    assert error_entries()[0].error == errno.EINVAL


def test_zero():
    assert ZERO_GUID.is_zero()
    assert not str_to_guid(TEXT).is_zero()
    assert str_to_guid("00000000-0000-0000-0000-000000000000").is_zero()


def test_cmp():
    low = str_to_guid("00000001-0000-0000-0000-000000000000")
    high = str_to_guid(TEXT)
    assert guid_cmp(low, high) == -1
    assert guid_cmp(high, low) == 1
    assert guid_cmp(high, str_to_guid(TEXT)) == 0


def test_cmp_uses_printed_fourth_group():
    first = str_to_guid("00000000-0000-0000-00ff-000000000000")
    second = str_to_guid("00000000-0000-0000-0100-000000000000")
    assert guid_cmp(first, second) == -1
    assert first < second


def test_sorting_matches_cmp():
    guids = [str_to_guid(TEXT), ZERO_GUID, str_to_guid("00000000-0000-0000-0000-000000000001")]
    ordered = sorted(guids)
    assert all(guid_cmp(x, y) < 0 for x, y in zip(ordered, ordered[1:]))


def test_id_guid():
    assert guid_to_id_guid(str_to_guid(TEXT)) == "{" + TEXT + "}"


def test_bad_field_rejected():
    with pytest.raises(ValueError):
        Guid(0, 0, 0, 0, b"\x00")