import dataclasses

import pytest

from efivarkit.errors import error_clear, error_entries
from efivarkit.gpt_structs import (
    GPT_BLOCK_SIZE,
    GPT_ENTRY_SIZE,
    GPT_HEADER_MAGIC,
    PARTITION_SYSTEM_GUID,
    GptEntry,
    GptHeader,
    LegacyMbr,
    compare_gpts,
    validate_nptes,
)
from efivarkit.guid import str_to_guid

DISK_GUID = str_to_guid("11111111-2222-3333-4444-555555555555")
LAST_LBA = 2047


def _primary():
    return GptHeader(
        my_lba=1,
        alternate_lba=LAST_LBA,
        first_usable_lba=34,
        last_usable_lba=LAST_LBA - 33,
        disk_guid=DISK_GUID,
        partition_entry_lba=2,
        num_partition_entries=128,
        partition_entry_array_crc32=0x12345678,
    )


def _alternate():
    return dataclasses.replace(
        _primary(), my_lba=LAST_LBA, alternate_lba=1, partition_entry_lba=LAST_LBA - 32
    )


def _mbr_bytes(os_type=0xEE, magic=b"\x55\xaa"):
    raw = bytearray(512)
    raw[446 + 4] = os_type
    raw[510:512] = magic
    return bytes(raw)


def test_header_round_trip():
    header = _primary()
    raw = header.to_bytes()
    assert len(raw) == GPT_BLOCK_SIZE
    assert GptHeader.from_bytes(raw) == header


def test_header_magic_is_efi_part_on_disk():
    raw = GptHeader().to_bytes()
    assert raw[:8] == b"EFI PART"
    assert GptHeader.from_bytes(raw).magic == GPT_HEADER_MAGIC


def test_header_disk_guid_position():
    raw = _primary().to_bytes()
    assert raw[56:72] == DISK_GUID.to_bytes()


def test_header_short_block_is_zero_filled():
    raw = _primary().to_bytes()[:92]
    header = GptHeader.from_bytes(raw)
    assert header.num_partition_entries == 128
    assert header.reserved2 == bytes(420)


def test_header_too_short_rejected():
    with pytest.raises(ValueError):
        GptHeader.from_bytes(bytes(91))


def test_entry_round_trip():
    entry = GptEntry(
        partition_type_guid=PARTITION_SYSTEM_GUID,
        unique_partition_guid=DISK_GUID,
        starting_lba=2048,
        ending_lba=4095,
        attributes=(1 << 63) | 1,
        partition_name="EFI System",
    )
    raw = entry.to_bytes()
    assert len(raw) == GPT_ENTRY_SIZE
    assert GptEntry.from_bytes(raw) == entry


def test_entry_name_is_ucs2_at_offset_56():
    raw = GptEntry(partition_name="boot").to_bytes()
    assert raw[56:64] == "boot".encode("utf-16-le")
    assert raw[64:128] == bytes(64)


def test_entry_type_guid_wire_form():
    raw = GptEntry(partition_type_guid=PARTITION_SYSTEM_GUID).to_bytes()
    assert raw[:16] == bytes.fromhex("28732ac11ff8d211ba4b00a0c93ec93b")


def test_entry_name_too_long():
    with pytest.raises(ValueError):
        GptEntry(partition_name="x" * 37).to_bytes()


def test_entry_too_short():
    with pytest.raises(ValueError):
        GptEntry.from_bytes(bytes(127))


def test_pmbr_valid():
    assert LegacyMbr.from_bytes(_mbr_bytes()).is_pmbr_valid() is True


def test_pmbr_without_gpt_partition():
    assert LegacyMbr.from_bytes(_mbr_bytes(os_type=0x83)).is_pmbr_valid() is False


def test_pmbr_bad_magic():
    assert LegacyMbr.from_bytes(_mbr_bytes(magic=b"\x00\x00")).is_pmbr_valid() is False


def test_mbr_partitions_parsed():
    mbr = LegacyMbr.from_bytes(_mbr_bytes())
    assert len(mbr.partitions) == 4
    assert mbr.partitions[0].os_type == 0xEE
    assert mbr.magic == 0xAA55


def test_validate_nptes_exact_fit():
    assert validate_nptes(2, 2, 34, 128, 128, 512) is True


def test_validate_nptes_too_many():
    assert validate_nptes(2, 2, 34, 128, 129, 512) is False


def test_validate_nptes_small_entry():
    assert validate_nptes(2, 2, 34, 64, 128, 512) is False


@pytest.mark.parametrize("pte_start", [1, 35])
def test_validate_nptes_out_of_bounds(pte_start):
    assert validate_nptes(2, pte_start, 34, 128, 4, 512) is False


def test_compare_consistent_pair():
    error_clear()
    assert compare_gpts(_primary(), _alternate(), LAST_LBA) == []
    assert error_entries() == ()


def test_compare_mismatched_entries():
    error_clear()
    alt = dataclasses.replace(_alternate(), num_partition_entries=64)
    problems = compare_gpts(_primary(), alt, LAST_LBA)
    assert problems == [
        "GPT:num_partition_entries don't match: 0x80 != 0x40",
        "GPT: Use GNU Parted to correct GPT errors.",
    ]
    assert [e.message for e in error_entries()] == problems
    error_clear()


def test_compare_alternate_not_at_end():
    problems = compare_gpts(_primary(), _alternate(), LAST_LBA + 1)
    assert len(problems) == 3
    assert problems[-1] == "GPT: Use GNU Parted to correct GPT errors."
    error_clear()


def test_compare_with_missing_header():
    assert compare_gpts(None, _alternate(), LAST_LBA) == []