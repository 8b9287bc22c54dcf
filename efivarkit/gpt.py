"""Locating and validating a GUID Partition Table on a disk or disk image."""

from __future__ import annotations

import errno
import os
import platform
import re
import stat
import struct
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Union

from .errors import EfiError, _record
from .gpt_structs import (
    GPT_BLOCK_SIZE,
    GPT_ENTRY_SIZE,
    GPT_HEADER_MAGIC,
    GPT_HEADER_MIN_SIZE,
    GPT_PRIMARY_PARTITION_TABLE_LBA,
    GptEntry,
    GptHeader,
    LegacyMbr,
    compare_gpts,
    validate_nptes,
)
from .guid import Guid

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None

DiskLike = Union[BinaryIO, str, bytes, "os.PathLike[str]"]

_BLKGETSIZE = 0x1260
_BLKSSZGET = 0x1268
_BLKGETSIZE64 = (2 << 30) | (struct.calcsize("N") << 16) | (0x12 << 8) | 114

_MAX_PARTITION_ENTRIES = 1024
_MAX_PARTITION_ENTRY_SIZE = 4096
_HEADER_CRC_OFFSET = 16
_RESERVED2_SIZE = GPT_BLOCK_SIZE - GPT_HEADER_MIN_SIZE


@dataclass(frozen=True)
class PartitionInfo:
    """Where a GPT partition lives and how it is identified."""

    start: int
    size: int
    signature: Guid
    mbr_type: int = 0x02
    signature_type: int = 0x02


def _crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _kernel_has_blkgetsize64() -> bool:
    """False only on the kernels whose BLKGETSIZE64 returned sector counts."""
    match = re.match(r"(\d+)\.(\d+)\.(\d+)", platform.release())
    if match is None:
        return True
    major, minor, patch = (int(part) for part in match.groups())
    if major == 2 and minor == 5 and patch < 4:
        return False
    if major == 2 and minor == 4 and 15 <= patch <= 18:
        return False
    return True


def _block_sector_size(fd: int) -> int:
    if fcntl is None:
        return GPT_BLOCK_SIZE
    try:
        size = struct.unpack("i", fcntl.ioctl(fd, _BLKSSZGET, bytes(4)))[0]
    except OSError:
        return GPT_BLOCK_SIZE
    return size if size > 0 else GPT_BLOCK_SIZE


def _block_num_sectors(fd: int, sector_size: int) -> int:
    if fcntl is None:
        return 0
    if _kernel_has_blkgetsize64():
        try:
            raw = fcntl.ioctl(fd, _BLKGETSIZE64, bytes(8))
            return struct.unpack("Q", raw)[0] // sector_size
        except OSError:
            pass
    try:
        raw = fcntl.ioctl(fd, _BLKGETSIZE, bytes(struct.calcsize("L")))
    except OSError:
        return 0
    return struct.unpack("L", raw)[0]


class _Disk:
    """Sector-addressed reads from a block device, file or in-memory image."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.sector_size, self.last_lba = self._geometry()

    def _geometry(self) -> tuple[int, int]:
        try:
            fd = self.stream.fileno()
        except (AttributeError, OSError, ValueError):
            fd = None
        if fd is not None:
            try:
                st = os.fstat(fd)
            except OSError as exc:
                _record("last_lba() could not stat: %s" % exc.strerror, exc.errno or 0)
                return GPT_BLOCK_SIZE, 0
            if stat.S_ISBLK(st.st_mode):
                sector_size = _block_sector_size(fd)
                return sector_size, _block_num_sectors(fd, sector_size) - 1
        try:
            end = self.stream.seek(0, os.SEEK_END)
        except (OSError, ValueError) as exc:
            _record("last_lba() could not size the disk: %s" % exc)
            return GPT_BLOCK_SIZE, 0
        return GPT_BLOCK_SIZE, end // GPT_BLOCK_SIZE - 1

    def read_lba(self, lba: int, count: int) -> bytes | None:
        """Read ``count`` bytes at ``lba``, zero-filled; None if nothing was read."""
        try:
            self.stream.seek(lba * self.sector_size)
            data = self.stream.read(count)
        except (OSError, OverflowError, ValueError):
            return None
        if not data:
            _record("read failed")
            return None
        return bytes(data).ljust(count, b"\0")


@contextmanager
def _open_disk(disk: DiskLike) -> Iterator[_Disk]:
    if isinstance(disk, (str, bytes, os.PathLike)):
        with open(disk, "rb") as stream:
            yield _Disk(stream)
    else:
        yield _Disk(disk)


def _check_lba(lba: int, lastlba: int, name: str) -> bool:
    if lba > lastlba:
        _record("Invalid %s LBA %x max:%x" % (name, lba, lastlba))
        return False
    return True


def _is_gpt_valid(
    disk: _Disk, lba: int, logical_block_size: int
) -> tuple[GptHeader, list[GptEntry]] | None:
    max_device_lba = disk.last_lba
    raw = disk.read_lba(lba, GPT_BLOCK_SIZE)
    if raw is None:
        return None
    header = GptHeader.from_bytes(raw)

    if header.magic != GPT_HEADER_MAGIC:
        _record(
            "GUID Partition Table Header magic is wrong: %x != %x"
            % (header.magic, GPT_HEADER_MAGIC)
        )
        return None

    hdrsz = header.header_size
    hdrmin = max(GPT_HEADER_MIN_SIZE, GPT_BLOCK_SIZE - _RESERVED2_SIZE)
    if hdrsz < hdrmin or hdrsz > logical_block_size:
        _record(
            "GUID Partition Table Header size is invalid (%d < %d < %d)"
            % (hdrmin, hdrsz, logical_block_size)
        )
        return None
    if hdrsz > len(raw):
        raw = disk.read_lba(lba, hdrsz)
        if raw is None:
            return None

    crc = _crc32(
        raw[:_HEADER_CRC_OFFSET] + bytes(4) + raw[_HEADER_CRC_OFFSET + 4:hdrsz]
    )
    if crc != header.header_crc32:
        _record("GPTH CRC check failed, %x != %x." % (header.header_crc32, crc))
        return None

    mylba = header.my_lba
    altlba = header.alternate_lba
    if mylba != lba and altlba != lba:
        _record("lba %x != lba %x." % (mylba, lba))
        return None

    ptelba = header.partition_entry_lba
    fulba = header.first_usable_lba
    lulba = header.last_usable_lba
    nptes = header.num_partition_entries
    ptesz = header.sizeof_partition_entry

    for value, name in (
        (mylba, "GPT"),
        (altlba, "GPT Alt"),
        (ptelba, "PTE"),
        (fulba, "First Usable"),
        (lulba, "Last Usable"),
    ):
        if not _check_lba(value, max_device_lba, name):
            return None

    if ptesz < GPT_ENTRY_SIZE or ptesz % 128 != 0:
        _record("Invalid GPT entry size is %d." % ptesz)
        return None
    if nptes > _MAX_PARTITION_ENTRIES:
        _record("Not honoring insane number of Partition Table Entries 0x%x." % nptes)
        return None
    if ptesz > _MAX_PARTITION_ENTRY_SIZE:
        _record("Not honoring insane Partition Table Entry size 0x%x." % ptesz)
        return None

    if altlba > mylba:
        firstlba, lastlba = mylba + 1, fulba
        pte_blocks = fulba - ptelba
        fits = validate_nptes(firstlba, ptelba, fulba, ptesz, nptes, logical_block_size)
    else:
        firstlba, lastlba = lulba, mylba
        pte_blocks = mylba - ptelba
        fits = validate_nptes(lulba, ptelba, mylba, ptesz, nptes, logical_block_size)
    if not fits:
        _record(
            "%d partition table entries with size 0x%x doesn't fit in 0x%x blocks "
            "between 0x%x and 0x%x." % (nptes, ptesz, pte_blocks, firstlba, lastlba)
        )
        return None

    count = nptes * ptesz
    if count == 0:
        return None
    raw_ptes = disk.read_lba(ptelba, count)
    if raw_ptes is None:
        return None

    if _crc32(raw_ptes) != header.partition_entry_array_crc32:
        _record("GUID Partitition Entry Array CRC check failed.")
        return None

    entries = [
        GptEntry.from_bytes(raw_ptes[offset:offset + ptesz])
        for offset in range(0, count, ptesz)
    ]
    return header, entries


def _find_valid_gpt(
    disk: _Disk, ignore_pmbr_error: bool, logical_block_size: int
) -> tuple[GptHeader, list[GptEntry]]:
    lastlba = disk.last_lba
    primary = _is_gpt_valid(disk, GPT_PRIMARY_PARTITION_TABLE_LBA, logical_block_size)
    alternate = None
    if primary is not None:
        alternate = _is_gpt_valid(disk, primary[0].alternate_lba, logical_block_size)
    if alternate is None:
        alternate = _is_gpt_valid(disk, lastlba, logical_block_size)

    if primary is None and alternate is None:
        raise EfiError(errno.EINVAL, "no valid GUID Partition Table found")

    mbr_raw = disk.read_lba(0, GPT_BLOCK_SIZE)
    good_pmbr = mbr_raw is not None and LegacyMbr.from_bytes(mbr_raw).is_pmbr_valid()

    if not good_pmbr:
        if not ignore_pmbr_error:
            _record("Primary GPT is invalid, using alternate GPT.")
            raise EfiError(errno.EINVAL, "disk has no valid protective MBR")
        _record(
            "  Warning: Disk has a valid GPT magic but invalid PMBR.\n"
            "  Use GNU Parted to correct disk.\n"
            "  gpt option taken, disk treated as GPT."
        )

    compare_gpts(
        primary[0] if primary is not None else None,
        alternate[0] if alternate is not None else None,
        lastlba,
    )

    chosen = primary if primary is not None else alternate
    assert chosen is not None
    return chosen


def is_gpt_valid(
    disk: DiskLike, lba: int, logical_block_size: int = GPT_BLOCK_SIZE
) -> tuple[GptHeader, list[GptEntry]] | None:
    """Return the header at ``lba`` and its entries if both check out, else None."""
    with _open_disk(disk) as opened:
        return _is_gpt_valid(opened, lba, logical_block_size)


def find_valid_gpt(
    disk: DiskLike,
    ignore_pmbr_error: bool = False,
    logical_block_size: int = GPT_BLOCK_SIZE,
) -> tuple[GptHeader, list[GptEntry]]:
    """Return the primary GPT if valid, else the alternate; raise if neither is."""
    with _open_disk(disk) as opened:
        return _find_valid_gpt(opened, ignore_pmbr_error, logical_block_size)


def get_partition_info(
    disk: DiskLike,
    num: int,
    ignore_pmbr_error: bool = False,
    logical_block_size: int = GPT_BLOCK_SIZE,
) -> PartitionInfo:
    """Start, size and unique GUID of partition ``num`` (counted from 1)."""
    header, entries = find_valid_gpt(disk, ignore_pmbr_error, logical_block_size)
    if not 0 < num <= header.num_partition_entries or num > len(entries):
        message = "partition %d is not valid" % num
        _record(message, errno.EINVAL)
        raise EfiError(errno.EINVAL, message)
    entry = entries[num - 1]
    return PartitionInfo(
        start=entry.starting_lba,
        size=entry.ending_lba - entry.starting_lba + 1,
        signature=entry.unique_partition_guid,
    )