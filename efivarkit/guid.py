"""EFI GUIDs: parsing, formatting, comparison and wire encoding."""

from __future__ import annotations

import errno
import functools
import struct
from dataclasses import dataclass

from .errors import EfiError, _record

_GUID_TEXT_LEN = len("84be9c3e-8a32-42c0-891c-4cd3b072becc")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_SPACES = frozenset(" \f\n\r\t\v")
_LAYOUT = struct.Struct("<IHH")


@functools.total_ordering
@dataclass(frozen=True, eq=True)
class Guid:
    """An EFI GUID; ``d`` holds the value of the fourth group as printed."""

    a: int
    b: int
    c: int
    d: int
    e: bytes

    def __post_init__(self) -> None:
        if len(self.e) != 6:
            raise ValueError("the last GUID field must be 6 bytes")
        if not (0 <= self.a <= 0xFFFFFFFF and all(0 <= v <= 0xFFFF for v in (self.b, self.c, self.d))):
            raise ValueError("GUID field out of range")
        object.__setattr__(self, "e", bytes(self.e))

    @classmethod
    def from_bytes(cls, data: bytes) -> Guid:
        """Decode the 16-byte mixed-endian wire form."""
        if len(data) < 16:
            raise ValueError("a GUID needs 16 bytes")
        a, b, c = _LAYOUT.unpack_from(data, 0)
        d = int.from_bytes(data[8:10], "big")
        return cls(a, b, c, d, bytes(data[10:16]))

    def to_bytes(self) -> bytes:
        """Encode in the 16-byte mixed-endian wire form."""
        return _LAYOUT.pack(self.a, self.b, self.c) + self.d.to_bytes(2, "big") + self.e

    def is_zero(self) -> bool:
        """True for the all-zero GUID."""
        return guid_cmp(self, ZERO_GUID) == 0

    def _key(self) -> tuple[int, int, int, int, bytes]:
        return (self.a, self.b, self.c, self.d, self.e)

    def __str__(self) -> str:
        return "%08x-%04x-%04x-%04x-%s" % (self.a, self.b, self.c, self.d, self.e.hex())

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Guid):
            return NotImplemented
        return self._key() < other._key()


ZERO_GUID = Guid(0, 0, 0, 0, bytes(6))
X509_CERT_GUID = Guid(0xA5C059A1, 0x94E4, 0x4AA7, 0x87B5, bytes.fromhex("ab155c2bf072"))


def _invalid(text: str) -> EfiError:
    _record('text_to_guid("%s",...)' % text, errno.EINVAL)
    return EfiError(errno.EINVAL, "invalid GUID text: %r" % text)


def _segment(text: str, start: int, length: int, original: str) -> int:
    piece = text[start:start + length]
    if len(piece) != length or not all(ch in _HEX_DIGITS for ch in piece):
        raise _invalid(original)
    return int(piece, 16)


def str_to_guid(text: str) -> Guid:
    """Parse ``xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx``, optionally in braces."""
    body = text
    if len(body) == _GUID_TEXT_LEN + 2:
        if body[0] != "{" or body[-1] != "}":
            raise _invalid(text)
        body = body[1:-1]

    if len(body) < _GUID_TEXT_LEN:
        raise _invalid(text)
    if len(body) > _GUID_TEXT_LEN and body[_GUID_TEXT_LEN] not in _SPACES:
        raise _invalid(text)
    if any(body[i] != "-" for i in (8, 13, 18, 23)):
        raise _invalid(text)

    a = _segment(body, 0, 8, text)
    b = _segment(body, 9, 4, text)
    c = _segment(body, 14, 4, text)
    d = _segment(body, 19, 4, text)
    e = bytes(_segment(body, 24 + 2 * i, 2, text) for i in range(6))
    return Guid(a, b, c, d, e)


def guid_to_str(guid: Guid) -> str:
    """Format a GUID in its canonical lower-case text form."""
    return str(guid)


def guid_cmp(a: Guid, b: Guid) -> int:
    """Three-way comparison: -1, 0 or 1."""
    ka, kb = a._key(), b._key()
    return (ka > kb) - (ka < kb)


def guid_to_id_guid(guid: Guid) -> str:
    """Format a GUID wrapped in braces."""
    return "{%s}" % guid