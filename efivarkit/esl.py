"""Iteration over EFI_SIGNATURE_LIST security databases (db, dbx, KEK, PK)."""

from __future__ import annotations

import enum
import errno
import struct
import warnings
from dataclasses import dataclass

from .errors import EfiError, _debug, _record
from .guid import Guid

# EFI_SIGNATURE_LIST: type GUID, list size, header size, signature size.
_ESL_HEADER = struct.Struct("<16sIII")
_ESL_HEADER_SIZE = _ESL_HEADER.size
_LIST_SIZE_OFFSET = 16
# EFI_SIGNATURE_DATA starts with the owner GUID, followed by the data.
_ESD_OWNER_SIZE = 16


class EslIterStatus(enum.IntEnum):
    """What an iteration step produced."""

    ERROR = -1
    DONE = 0
    NEW_DATA = 1
    NEW_LIST = 2


@dataclass(frozen=True)
class EslEntry:
    """One signature: its list's type, its owner and its data."""

    type: Guid
    owner: Guid
    data: bytes
    status: EslIterStatus


def _fail(error: int, message: str) -> EfiError:
    _record(message, error)
    return EfiError(error, message)


class EslIterator:
    """Walk every EFI_SIGNATURE_DATA entry of a security database buffer."""

    def __init__(self, buf: bytes, correct_size: bool = False) -> None:
        minimum = _ESL_HEADER_SIZE + _ESD_OWNER_SIZE
        if len(buf) < minimum:
            raise _fail(
                errno.EINVAL,
                "buffer is too small for any EFI_SIGNATURE_LIST entries: %d < %d"
                % (len(buf), minimum),
            )
        # A private copy: size correction rewrites list headers.
        self._buf = bytearray(buf)
        self._correct_size = correct_size
        self._offset = 0
        self._esl: int | None = None
        self._esd = 0
        self._nmemb = 0
        self._i = -1
        self._line = 0
        self._finished = False

    def __iter__(self) -> EslIterator:
        return self

    def __next__(self) -> EslEntry:
        if self._finished:
            raise StopIteration
        try:
            entry = self._advance()
        except EfiError:
            self._finished = True
            raise
        if entry is None:
            self._finished = True
            raise StopIteration
        return entry

    def line(self) -> int:
        """Number of steps taken so far."""
        return self._line

    def esd_offset(self) -> int:
        """Offset of the current signature entry from the start of the buffer."""
        return self._esd

    # -- signature list level -------------------------------------------------

    def _fields(self) -> tuple[bytes, int, int, int]:
        return _ESL_HEADER.unpack_from(self._buf, self._esl)

    def _list_type(self) -> Guid:
        return Guid.from_bytes(self._fields()[0])

    def _signature_list_size(self) -> int:
        size = self._fields()[1]
        if size < _ESL_HEADER_SIZE:
            raise _fail(errno.EINVAL, "esl_list_signature_list_size() failed")
        return size

    def _signature_size(self) -> int:
        size = self._fields()[3]
        if size < 1:
            raise _fail(errno.EINVAL, "esl_list_sig_size() failed")
        return size

    def _check_fits(self) -> None:
        remaining = len(self._buf) - self._offset
        list_size = self._fields()[1]
        if list_size <= remaining:
            return
        _debug("EFI_SIGNATURE_LIST is malformed")
        if self._correct_size and remaining > 0:
            warnings.warn(
                "correcting ESL size from %d to %d at 0x%x"
                % (list_size, remaining, self._offset),
                RuntimeWarning,
                stacklevel=4,
            )
            struct.pack_into("<I", self._buf, self._esl + _LIST_SIZE_OFFSET, remaining)
            return
        raise _fail(errno.EOVERFLOW, "EFI_SIGNATURE_LIST is malformed")

    def _next_list(self) -> bool:
        length = len(self._buf)
        if self._offset >= length:
            raise _fail(
                errno.EINVAL,
                "iter->offset (%d) >= iter->len (%d)" % (self._offset, length),
            )

        if self._esl is None:
            _debug("Getting next ESL buffer (correct_size:%d)" % self._correct_size)
            self._esl = 0
            self._check_fits()
        else:
            _debug("Getting next efi_signature_list_t")
            self._check_fits()
            self._offset += self._fields()[1]
            if self._offset >= length:
                return False
            self._esl = self._offset

        header = bytes(self._buf[self._esl:self._esl + _ESL_HEADER_SIZE])
        # Zero padding past the real lists marks the end.
        if not any(header):
            return False
        if len(header) < _ESL_HEADER_SIZE:
            raise _fail(errno.EOVERFLOW, "EFI_SIGNATURE_LIST is malformed")
        self._check_fits()
        return True

    # -- signature data level -------------------------------------------------

    def _advance(self) -> EslEntry | None:
        self._line += 1
        self._i += 1

        if self._i == self._nmemb:
            _debug("Getting next efi_signature_data_t (correct_size:%d)" % self._correct_size)
            self._i = 0
            if not self._next_list():
                return None
            status = EslIterStatus.NEW_LIST
            header_size = self._fields()[2]
            self._esd = self._esl + _ESL_HEADER_SIZE + header_size
            ss = self._signature_size()
            sls = self._signature_list_size()
            _debug("list size:%d header size:%d data size:%d" % (sls, header_size, ss))
            payload = sls - _ESL_HEADER_SIZE - header_size
            if payload < 0 or payload % ss != 0:
                raise _fail(
                    errno.EINVAL,
                    "signature list size is not a multiple of the signature entry size: "
                    "%d %% %d = %d" % (payload, ss, payload % ss),
                )
            self._nmemb = payload // ss
            _debug("iter->nmemb:%d" % self._nmemb)
        else:
            _debug("Getting next esd element")
            status = EslIterStatus.NEW_DATA
            ss = self._signature_size()
            bufsz = len(self._buf)
            if self._esd + ss > bufsz:
                message = "signature data entry is not within list bounds (%d > %d)" % (
                    self._esd + ss,
                    bufsz,
                )
                _debug("EFI_SIGNATURE_LIST is malformed")
                if not self._correct_size:
                    _record(message, errno.EOVERFLOW)
                raise EfiError(errno.EOVERFLOW, message)
            self._esd += ss

        return self._entry(status, ss)

    def _entry(self, status: EslIterStatus, ss: int) -> EslEntry:
        owner_bytes = bytes(self._buf[self._esd:self._esd + _ESD_OWNER_SIZE])
        if len(owner_bytes) < _ESD_OWNER_SIZE:
            raise _fail(errno.EOVERFLOW, "signature data entry is not within list bounds")
        data = bytes(self._buf[self._esd + _ESD_OWNER_SIZE:self._esd + ss])
        return EslEntry(
            type=self._list_type(),
            owner=Guid.from_bytes(owner_bytes),
            data=data,
            status=status,
        )


def iter_esl(buf: bytes, correct_size: bool = False) -> EslIterator:
    """Return an iterator over every signature entry in ``buf``."""
    return EslIterator(buf, correct_size)