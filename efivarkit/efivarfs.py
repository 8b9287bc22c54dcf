"""Variable storage backed by the Linux efivarfs filesystem."""

from __future__ import annotations

import errno
import os
import re
import struct
import time
from collections.abc import Iterator

from .errors import EfiError, _record, error_clear
from .guid import Guid, str_to_guid

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004
EFI_VARIABLE_HARDWARE_ERROR_RECORD = 0x00000008
EFI_VARIABLE_AUTHENTICATED_WRITE_ACCESS = 0x00000010
EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS = 0x00000020
EFI_VARIABLE_APPEND_WRITE = 0x00000040
EFI_VARIABLE_ENHANCED_AUTHENTICATED_ACCESS = 0x00000080

DEFAULT_EFIVARFS_PATH = "/sys/firmware/efi/efivars/"
MAX_NAME_LENGTH = 1024

_ATTR = struct.Struct("=I")
_FLAGS = struct.Struct("L")
_FS_IOC_GETFLAGS = (2 << 30) | (_FLAGS.size << 16) | (ord("f") << 8) | 1
_FS_IOC_SETFLAGS = (1 << 30) | (_FLAGS.size << 16) | (ord("f") << 8) | 2
_FS_IMMUTABLE_FL = 0x00000010

_ENTRY_RE = re.compile(
    r"^(?P<name>.+)-(?P<guid>[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-"
    r"[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$"
)
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def efivarfs_path() -> str:
    """Return the efivarfs mount point, honouring ``EFIVARFS_PATH``."""
    return os.environ.get("EFIVARFS_PATH") or DEFAULT_EFIVARFS_PATH


def _failure(exc: OSError, message: str) -> EfiError:
    code = exc.errno if exc.errno is not None else errno.EIO
    _record(message, code)
    return EfiError(code, "%s: %s" % (message, exc.strerror or exc))


def _get_flags(fd: int) -> int:
    if fcntl is None:
        raise OSError(errno.ENOTTY, "inode flags are not supported")
    out = fcntl.ioctl(fd, _FS_IOC_GETFLAGS, bytes(_FLAGS.size))
    return _FLAGS.unpack(out)[0] & 0xFFFFFFFF


def _set_flags(fd: int, flags: int) -> None:
    if fcntl is None:
        raise OSError(errno.ENOTTY, "inode flags are not supported")
    fcntl.ioctl(fd, _FS_IOC_SETFLAGS, _FLAGS.pack(flags & 0xFFFFFFFF))


def _set_fd_immutable(fd: int, immutable: bool) -> None:
    try:
        flags = _get_flags(fd)
    except OSError as exc:
        if exc.errno == errno.ENOTTY:
            return
        _record("ioctl(%d, FS_IOC_GETFLAGS) failed" % fd, exc.errno or 0)
        raise
    if immutable == bool(flags & _FS_IMMUTABLE_FL):
        return
    flags = flags | _FS_IMMUTABLE_FL if immutable else flags & ~_FS_IMMUTABLE_FL
    try:
        _set_flags(fd, flags)
    except OSError as exc:
        _record("ioctl(%d, FS_IOC_SETFLAGS) failed" % fd, exc.errno or 0)
        raise


def _set_immutable(path: str, immutable: bool) -> bool:
    """Set or clear the immutable flag of ``path``; report success."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return False
    try:
        _set_fd_immutable(fd, immutable)
    except OSError as exc:
        _record(
            "efivarfs_set_fd_immutable(%d, %d) on %s failed" % (fd, immutable, path),
            exc.errno or 0,
        )
        return False
    finally:
        os.close(fd)
    return True


def _make_fd_mutable(fd: int) -> int | None:
    """Clear the immutable flag; return the original flags if it was set."""
    try:
        orig = _get_flags(fd)
        if not orig & _FS_IMMUTABLE_FL:
            return None
        _set_flags(fd, orig & ~_FS_IMMUTABLE_FL)
    except OSError:
        return None
    return orig


def _unescape_mount_field(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _filesystem_type(path: str) -> str | None:
    """Type of the filesystem holding ``path``, from the mount table."""
    target = os.path.realpath(path)
    best = ""
    fstype = None
    try:
        with open("/proc/self/mounts", encoding="utf-8", errors="replace") as mounts:
            for line in mounts:
                fields = line.split()
                if len(fields) < 3:
                    continue
                mount_point = _unescape_mount_field(fields[1])
                prefix = mount_point.rstrip("/") + "/"
                if target != mount_point and not target.startswith(prefix):
                    continue
                if len(mount_point) >= len(best):
                    best, fstype = mount_point, fields[2]
    except OSError:
        return None
    return fstype


class EfivarfsBackend:
    """EFI variables as files named ``<name>-<guid>`` in an efivarfs mount."""

    name = "efivarfs"

    def __init__(self, path: str | None = None) -> None:
        self.path = efivarfs_path() if path is None else path

    def variable_path(self, guid: Guid, name: str) -> str:
        """File that holds the variable ``name`` of vendor ``guid``."""
        return "%s%s-%s" % (self.path, name, guid)

    def probe(self) -> bool:
        """True when the configured path is usable as an efivarfs mount."""
        try:
            os.stat(self.path)
        except OSError as exc:
            _record("statfs(%s) failed" % self.path, exc.errno or 0)
            return False
        if _filesystem_type(self.path) == "efivarfs":
            return True
        _record("bad fs type for %s" % self.path)
        if os.environ.get("EFIVARFS_PATH") == self.path:
            error_clear()
            return True
        return False

    def set_variable(
        self,
        guid: Guid,
        name: str,
        data: bytes,
        attributes: int,
        mode: int = 0o600,
    ) -> None:
        """Write a variable, creating it with ``mode`` if it does not exist."""
        name_length = len(name.encode("utf-8"))
        if name_length > MAX_NAME_LENGTH:
            message = "name too long (%d of %d)" % (name_length, MAX_NAME_LENGTH)
            _record(message, errno.EINVAL)
            raise EfiError(errno.EINVAL, message)

        path = self.variable_path(guid, name)
        payload = _ATTR.pack(attributes & 0xFFFFFFFF) + bytes(data)
        appending = bool(attributes & EFI_VARIABLE_APPEND_WRITE)

        rfd: int | None = None
        wfd: int | None = None
        restore_fd: int | None = None
        orig_flags = 0
        done = False
        try:
            try:
                rfd = os.open(path, os.O_RDONLY)
            except OSError:
                rfd = None

            if rfd is not None:
                try:
                    rstat = os.fstat(rfd)
                except OSError as exc:
                    raise _failure(exc, "fstat() failed on r/o fd %d" % rfd) from exc
                flags = _make_fd_mutable(rfd)
                if flags is not None:
                    orig_flags, restore_fd = flags, rfd

            wflags = os.O_WRONLY
            if appending:
                wflags |= os.O_APPEND
            if rfd is None:
                wflags |= os.O_CREAT | os.O_EXCL
            try:
                wfd = os.open(path, wflags, mode)
            except OSError as exc:
                raise _failure(
                    exc,
                    "failed to %s %s for %s"
                    % (
                        "create" if rfd is None else "open",
                        path,
                        "appending" if appending else "writing",
                    ),
                ) from exc

            if rfd is None:
                flags = _make_fd_mutable(wfd)
                if flags is not None:
                    orig_flags, restore_fd = flags, wfd
            else:
                try:
                    wstat = os.fstat(wfd)
                except OSError as exc:
                    raise _failure(exc, "fstat() failed on w/o fd %d" % wfd) from exc
                if (rstat.st_dev, rstat.st_ino) != (wstat.st_dev, wstat.st_ino):
                    message = "r/o fd %d and w/o fd %d refer to different files" % (rfd, wfd)
                    _record(message, errno.EINVAL)
                    raise EfiError(errno.EINVAL, message)

            try:
                os.write(wfd, payload)
            except OSError as exc:
                raise _failure(exc, "writing to fd %d failed" % wfd) from exc
            done = True
        finally:
            if not done and rfd is None and wfd is not None:
                try:
                    os.unlink(path)
                except OSError as exc:
                    _record("failed to unlink %s" % path, exc.errno or 0)
            if restore_fd is not None:
                try:
                    _set_flags(restore_fd, orig_flags)
                except OSError:
                    pass
            if wfd is not None:
                os.close(wfd)
            if rfd is not None:
                os.close(rfd)

    def append_variable(self, guid: Guid, name: str, data: bytes, attributes: int) -> None:
        """Append ``data`` to a variable, creating it if needed."""
        try:
            self.set_variable(guid, name, data, attributes | EFI_VARIABLE_APPEND_WRITE, 0)
        except EfiError as exc:
            _record("efivarfs_set_variable failed", exc.errno or 0)
            raise

    def del_variable(self, guid: Guid, name: str) -> None:
        """Remove a variable, clearing its immutable flag first."""
        path = self.variable_path(guid, name)
        _set_immutable(path, False)
        try:
            os.unlink(path)
        except OSError as exc:
            raise _failure(exc, "unlink failed") from exc

    def get_variable(self, guid: Guid, name: str) -> tuple[bytes, int]:
        """Return the variable's data and attributes."""
        # The kernel throttles non-root readers to 100 reads per second.
        delay = 0.0 if hasattr(os, "geteuid") and os.geteuid() == 0 else 0.01
        path = self.variable_path(guid, name)
        try:
            with open(path, "rb", buffering=0) as var:
                time.sleep(delay)
                head = var.read(_ATTR.size) or b""
                time.sleep(delay)
                data = var.readall()
        except OSError as exc:
            raise _failure(exc, "open(%s)" % path) from exc
        attributes = _ATTR.unpack(head.ljust(_ATTR.size, b"\0"))[0]
        return data, attributes

    def get_variable_attributes(self, guid: Guid, name: str) -> int:
        """Return only the variable's attributes."""
        try:
            return self.get_variable(guid, name)[1]
        except EfiError as exc:
            _record("efi_get_variable failed", exc.errno or 0)
            raise

    def get_variable_size(self, guid: Guid, name: str) -> int:
        """Size of the variable's data, excluding the attributes field."""
        path = self.variable_path(guid, name)
        try:
            st = os.stat(path)
        except OSError as exc:
            raise _failure(exc, "stat(%s) failed" % path) from exc
        return st.st_size - _ATTR.size

    def variable_names(self) -> Iterator[tuple[Guid, str]]:
        """Yield ``(guid, name)`` for every variable in the mount."""
        try:
            entries = [entry.name for entry in os.scandir(self.path)]
        except OSError as exc:
            raise _failure(exc, "generic_get_next_variable_name failed") from exc
        for entry in entries:
            match = _ENTRY_RE.match(entry)
            if match is None:
                continue
            yield str_to_guid(match.group("guid")), match.group("name")

    def chmod_variable(self, guid: Guid, name: str, mode: int) -> None:
        """Change the permission bits of a variable's file."""
        path = self.variable_path(guid, name)
        try:
            os.chmod(path, mode)
        except OSError as exc:
            raise _failure(exc, "chmod(%s,0%o) failed" % (path, mode)) from exc