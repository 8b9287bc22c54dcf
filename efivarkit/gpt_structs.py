"""On-disk GUID Partition Table structures and their consistency checks."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from .errors import _record
from .guid import ZERO_GUID, Guid

EFI_PMBR_OSTYPE_EFI = 0xEF
EFI_PMBR_OSTYPE_EFI_GPT = 0xEE
MSDOS_MBR_MAGIC = 0xAA55
GPT_BLOCK_SIZE = 512

GPT_HEADER_MAGIC = 0x5452415020494645
GPT_HEADER_REVISION_V1_02 = 0x00010200
GPT_HEADER_REVISION_V1_00 = 0x00010000
GPT_HEADER_REVISION_V0_99 = 0x00009900
GPT_PRIMARY_PARTITION_TABLE_LBA = 1
GPT_HEADER_MIN_SIZE = 92
GPT_ENTRY_SIZE = 128

GPT_DEFAULT_RESERVED_PARTITION_ENTRY_ARRAY_SIZE = 16384
GPT_DEFAULT_RESERVED_PARTITION_ENTRIES = (
    GPT_DEFAULT_RESERVED_PARTITION_ENTRY_ARRAY_SIZE // GPT_ENTRY_SIZE
)

PARTITION_SYSTEM_GUID = Guid(0xC12A7328, 0xF81F, 0x11D2, 0xBA4B, bytes.fromhex("00a0c93ec93b"))
LEGACY_MBR_PARTITION_GUID = Guid(0x024DEE41, 0x33E7, 0x11D3, 0x9D69, bytes.fromhex("0008c781f39f"))
PARTITION_MSFT_RESERVED_GUID = Guid(0xE3C9E316, 0x0B5C, 0x4DB8, 0x817D, bytes.fromhex("f92df00215ae"))
PARTITION_BASIC_DATA_GUID = Guid(0xEBD0A0A2, 0xB9E5, 0x4433, 0x87C0, bytes.fromhex("68b6b72699c7"))
PARTITION_LINUX_RAID_GUID = Guid(0xA19D880F, 0x05FC, 0x4D3B, 0xA006, bytes.fromhex("743f0f84911e"))
PARTITION_LINUX_SWAP_GUID = Guid(0x0657FD6D, 0xA4AB, 0x43C4, 0x84E5, bytes.fromhex("0933c84b4f4f"))
PARTITION_LINUX_LVM_GUID = Guid(0xE6D6D379, 0xF507, 0x44C2, 0xA23C, bytes.fromhex("238f2a3df928"))

_UINT64_MAX = 0xFFFFFFFFFFFFFFFF
_RESERVED2_SIZE = GPT_BLOCK_SIZE - GPT_HEADER_MIN_SIZE
_NAME_SIZE = 72

_HEADER = struct.Struct("<QIIIIQQQQ16sQIII%ds" % _RESERVED2_SIZE)
_ENTRY = struct.Struct("<16s16sQQQ%ds" % _NAME_SIZE)
_PARTITION_RECORD = struct.Struct("<BBBBBBBBII")
_MBR = struct.Struct("<440sIH64sH")


@dataclass(frozen=True)
class GptHeader:
    """A GPT header block."""

    magic: int = GPT_HEADER_MAGIC
    revision: int = GPT_HEADER_REVISION_V1_00
    header_size: int = GPT_HEADER_MIN_SIZE
    header_crc32: int = 0
    reserved1: int = 0
    my_lba: int = 0
    alternate_lba: int = 0
    first_usable_lba: int = 0
    last_usable_lba: int = 0
    disk_guid: Guid = ZERO_GUID
    partition_entry_lba: int = 0
    num_partition_entries: int = 0
    sizeof_partition_entry: int = GPT_ENTRY_SIZE
    partition_entry_array_crc32: int = 0
    reserved2: bytes = field(default=bytes(_RESERVED2_SIZE))

    @classmethod
    def from_bytes(cls, data: bytes) -> GptHeader:
        """Decode a header; a short block is zero-filled past 92 bytes."""
        raw = bytes(data)
        if len(raw) < GPT_HEADER_MIN_SIZE:
            raise ValueError("a GPT header needs at least %d bytes" % GPT_HEADER_MIN_SIZE)
        raw = raw[:GPT_BLOCK_SIZE].ljust(GPT_BLOCK_SIZE, b"\0")
        (
            magic, revision, header_size, header_crc32, reserved1,
            my_lba, alternate_lba, first_usable_lba, last_usable_lba,
            disk_guid, partition_entry_lba, num_partition_entries,
            sizeof_partition_entry, partition_entry_array_crc32, reserved2,
        ) = _HEADER.unpack(raw)
        return cls(
            magic=magic,
            revision=revision,
            header_size=header_size,
            header_crc32=header_crc32,
            reserved1=reserved1,
            my_lba=my_lba,
            alternate_lba=alternate_lba,
            first_usable_lba=first_usable_lba,
            last_usable_lba=last_usable_lba,
            disk_guid=Guid.from_bytes(disk_guid),
            partition_entry_lba=partition_entry_lba,
            num_partition_entries=num_partition_entries,
            sizeof_partition_entry=sizeof_partition_entry,
            partition_entry_array_crc32=partition_entry_array_crc32,
            reserved2=reserved2,
        )

    def to_bytes(self) -> bytes:
        """Encode as a full 512-byte block."""
        return _HEADER.pack(
            self.magic,
            self.revision,
            self.header_size,
            self.header_crc32,
            self.reserved1,
            self.my_lba,
            self.alternate_lba,
            self.first_usable_lba,
            self.last_usable_lba,
            self.disk_guid.to_bytes(),
            self.partition_entry_lba,
            self.num_partition_entries,
            self.sizeof_partition_entry,
            self.partition_entry_array_crc32,
            bytes(self.reserved2)[:_RESERVED2_SIZE].ljust(_RESERVED2_SIZE, b"\0"),
        )


@dataclass(frozen=True)
class GptEntry:
    """One partition table entry."""

    partition_type_guid: Guid = ZERO_GUID
    unique_partition_guid: Guid = ZERO_GUID
    starting_lba: int = 0
    ending_lba: int = 0
    attributes: int = 0
    partition_name: str = ""

    @classmethod
    def from_bytes(cls, data: bytes) -> GptEntry:
        """Decode the first 128 bytes of ``data``."""
        raw = bytes(data)
        if len(raw) < GPT_ENTRY_SIZE:
            raise ValueError("a GPT entry needs %d bytes" % GPT_ENTRY_SIZE)
        ptype, unique, start, end, attributes, name_raw = _ENTRY.unpack_from(raw, 0)
        units = struct.unpack("<%dH" % (_NAME_SIZE // 2), name_raw)
        if 0 in units:
            units = units[:units.index(0)]
        name = struct.pack("<%dH" % len(units), *units).decode("utf-16-le", "surrogatepass")
        return cls(
            partition_type_guid=Guid.from_bytes(ptype),
            unique_partition_guid=Guid.from_bytes(unique),
            starting_lba=start,
            ending_lba=end,
            attributes=attributes,
            partition_name=name,
        )

    def to_bytes(self) -> bytes:
        """Encode as a 128-byte entry."""
        name = self.partition_name.encode("utf-16-le", "surrogatepass")
        if len(name) > _NAME_SIZE:
            raise ValueError("partition name is longer than 36 UCS-2 characters")
        return _ENTRY.pack(
            self.partition_type_guid.to_bytes(),
            self.unique_partition_guid.to_bytes(),
            self.starting_lba,
            self.ending_lba,
            self.attributes,
            name.ljust(_NAME_SIZE, b"\0"),
        )


@dataclass(frozen=True)
class _PartitionRecord:
    boot_indicator: int
    start_head: int
    start_sector: int
    start_track: int
    os_type: int
    end_head: int
    end_sector: int
    end_track: int
    starting_lba: int
    size_in_lba: int


@dataclass(frozen=True)
class LegacyMbr:
    """A legacy or protective master boot record."""

    bootcode: bytes
    unique_mbr_signature: int
    unknown: int
    partitions: tuple[_PartitionRecord, ...]
    magic: int

    @classmethod
    def from_bytes(cls, data: bytes) -> LegacyMbr:
        """Decode a sector; a short one is zero-filled to 512 bytes."""
        raw = bytes(data)[:GPT_BLOCK_SIZE].ljust(GPT_BLOCK_SIZE, b"\0")
        bootcode, signature, unknown, table, magic = _MBR.unpack(raw)
        partitions = tuple(
            _PartitionRecord(*fields) for fields in _PARTITION_RECORD.iter_unpack(table)
        )
        return cls(bootcode, signature, unknown, partitions, magic)

    def is_pmbr_valid(self) -> bool:
        """True when the MBR magic is present and one partition has type 0xEE."""
        if self.magic != MSDOS_MBR_MAGIC:
            return False
        return any(p.os_type == EFI_PMBR_OSTYPE_EFI_GPT for p in self.partitions)


def validate_nptes(
    first_block: int,
    pte_start: int,
    last_block: int,
    ptesz: int,
    nptes: int,
    blksz: int,
) -> bool:
    """True when ``nptes`` entries of ``ptesz`` bytes fit between the bounds."""
    min_entry_size = GPT_ENTRY_SIZE
    mod = 128 - GPT_ENTRY_SIZE % 128
    if mod != 128:
        min_entry_size += mod
    if ptesz < min_entry_size:
        return False
    if pte_start < first_block or pte_start > last_block:
        return False
    if blksz <= 0 or nptes <= 0:
        return False

    max_blocks = last_block - pte_start
    if _UINT64_MAX // blksz < max_blocks:
        return False
    max_bytes = max_blocks * blksz
    if _UINT64_MAX // ptesz < max_bytes:
        return False
    if ptesz > max_bytes // nptes:
        return False
    if max_bytes // ptesz < nptes:
        return False
    return True


def compare_gpts(
    pgpt: GptHeader | None,
    agpt: GptHeader | None,
    lastlba: int,
) -> list[str]:
    """Report discrepancies between the primary and alternate headers."""
    if pgpt is None or agpt is None:
        return []

    problems: list[str] = []

    def report(message: str) -> None:
        _record(message)
        problems.append(message)

    if pgpt.my_lba != agpt.alternate_lba:
        report(
            "GPT:Primary header LBA != Alt. header alternate_lba"
            "GPT:0x%x != 0x%x" % (pgpt.my_lba, agpt.alternate_lba)
        )
    if pgpt.alternate_lba != agpt.my_lba:
        report(
            "GPT:Primary header alternate_lba != Alt. header my_lba"
            "GPT:0x%x != 0x%x" % (pgpt.alternate_lba, agpt.my_lba)
        )
    if pgpt.first_usable_lba != agpt.first_usable_lba:
        report(
            "GPT:first_usable_lbas don't match."
            "GPT:0x%x != 0x%x" % (pgpt.first_usable_lba, agpt.first_usable_lba)
        )
    if pgpt.last_usable_lba != agpt.last_usable_lba:
        report(
            "GPT:last_usable_lbas don't match."
            "GPT:0x%x != 0x%x" % (pgpt.last_usable_lba, agpt.last_usable_lba)
        )
    if pgpt.disk_guid.to_bytes() != agpt.disk_guid.to_bytes():
        report("GPT:disk_guids don't match.")
    if pgpt.num_partition_entries != agpt.num_partition_entries:
        report(
            "GPT:num_partition_entries don't match: 0x%x != 0x%x"
            % (pgpt.num_partition_entries, agpt.num_partition_entries)
        )
    if pgpt.sizeof_partition_entry != agpt.sizeof_partition_entry:
        report(
            "GPT:sizeof_partition_entry values don't match: 0x%x != 0x%x"
            % (pgpt.sizeof_partition_entry, agpt.sizeof_partition_entry)
        )
    if pgpt.partition_entry_array_crc32 != agpt.partition_entry_array_crc32:
        report(
            "GPT:partition_entry_array_crc32 values don't match: 0x%x != 0x%x"
            % (pgpt.partition_entry_array_crc32, agpt.partition_entry_array_crc32)
        )
    if pgpt.alternate_lba != lastlba:
        report(
            "GPT:Primary header thinks Alt. header is not at the end of the disk."
            "GPT:0x%x != 0x%x" % (pgpt.alternate_lba, lastlba)
        )
    if agpt.my_lba != lastlba:
        report(
            "GPT:Alternate GPT header not at the end of the disk."
            "GPT:0x%x != 0x%x" % (agpt.my_lba, lastlba)
        )

    if problems:
        report("GPT: Use GNU Parted to correct GPT errors.")
    return problems