"""
Module that exposes the remote file system operations to FUSE.

FUSE speaks open flags and errno values while the file system operations speak
dispositions and status codes. This adapter translates between the two and keeps track
of open file handles. It holds no other state: every call is forwarded to the remote
end.
"""

from datetime import datetime, timezone
import errno
import itertools
import os
import stat
import threading
from typing import Callable, Dict, List, Optional, Tuple

from sshmount.filesystem.common import (
    Disposition,
    FileAttribute,
    FileInformation,
    OpenResult,
    Status,
)
from sshmount.filesystem.filesystem import SshFileSystem
from sshmount.filesystem.fuse import Operations
from sshmount.filesystem.fuse.fuse import RENAME_EXCHANGE, RENAME_NOREPLACE
from sshmount.logger import log

BLOCK_SIZE = 4096
MAX_NAME_LENGTH = 255

_ERRNO = {
    Status.SUCCESS: 0,
    Status.NAME_NOT_FOUND: errno.ENOENT,
    Status.NAME_COLLISION: errno.EEXIST,
    Status.ACCESS_DENIED: errno.EACCES,
    Status.PATH_NOT_FOUND: errno.ENOENT,
    Status.NOT_A_DIRECTORY: errno.ENOTDIR,
    Status.ERROR: errno.EIO,
    Status.NOT_IMPLEMENTED: errno.ENOSYS,
}


def errno_for(status: Status) -> int:
    """Return the errno value that corresponds to a status code, 0 for success."""
    return _ERRNO[status]


def check(status: Status) -> None:
    """Raise the OSError that FUSE should report for an unsuccessful status."""
    if status != Status.SUCCESS:
        err = errno_for(status)
        raise OSError(err, os.strerror(err))


def create_disposition(flags: int) -> Disposition:
    """Translate the open flags of a create call."""
    if flags & os.O_EXCL:
        return Disposition.CREATE_NEW
    elif flags & os.O_TRUNC:
        return Disposition.CREATE
    else:
        return Disposition.OPEN_OR_CREATE


def open_disposition(flags: int) -> Disposition:
    """Translate the open flags of an open call on an existing path."""
    if flags & os.O_TRUNC:
        return Disposition.TRUNCATE
    elif flags & os.O_APPEND:
        return Disposition.APPEND
    else:
        return Disposition.OPEN


def _nanoseconds(timestamp: datetime) -> int:
    return round(timestamp.timestamp() * 10 ** 9)


def _datetime(nanoseconds: int) -> datetime:
    return datetime.fromtimestamp(nanoseconds / 10 ** 9, tz=timezone.utc)


class MountedFileSystem(Operations):
    """FUSE file system that forwards every call to the remote file system operations."""

    def __init__(self, fs: SshFileSystem, mount_callback: Optional[Callable] = None):
        """Instantiate with the file system operations of a connected mount."""
        self._fs = fs
        self._mount_callback = mount_callback

        self._handles: Dict[int, OpenResult] = {}
        self._handles_lock = threading.Lock()
        self._next_handle = itertools.count(1)

    def init(self) -> None:
        """File system has been successfully mounted by FUSE."""
        check(self._fs.mounted())

        _, volume = self._fs.get_volume_information()
        log.info(f"mounted volume {volume.volume_label} ({volume.filesystem_name})")

        if self._mount_callback is not None:
            self._mount_callback()

    def destroy(self) -> None:
        self._fs.unmounted()

    #
    # File handles
    #

    def _open(self, path: str, is_directory: bool, disposition: Disposition) -> int:
        result = self._fs.open_or_create(path, is_directory, disposition)
        check(result.status)

        with self._handles_lock:
            fh = next(self._next_handle)
            self._handles[fh] = result

        return fh

    def _is_directory(self, fh: int) -> bool:
        with self._handles_lock:
            result = self._handles.get(fh)

        return result is not None and result.is_directory

    def open(self, path: str, flags: int) -> int:
        return self._open(path, False, open_disposition(flags))

    def create(self, path: str, flags: int, mode: int) -> int:
        return self._open(path, False, create_disposition(flags))

    def read(self, path: str, fh: int, offset: int, size: int) -> bytes:
        status, data = self._fs.read_file(path, size, offset, self._is_directory(fh))
        check(status)

        return data

    def write(self, path: str, fh: int, offset: int, data: bytes) -> int:
        status, written = self._fs.write_file(path, data, offset)
        check(status)

        return written

    def truncate(self, path: str, fh: Optional[int], size: int) -> None:
        """
        Change the size of a file.

        Truncating to zero recreates the file. Other sizes can only grow the file, a
        smaller size is accepted but leaves the contents untouched.
        """
        if size == 0:
            check(self._fs.open_or_create(path, False, Disposition.TRUNCATE).status)
        else:
            check(self._fs.set_end_of_file(path, size))

    def flush(self, path: str, fh: int) -> None:
        check(self._fs.flush_file_buffers(path))

    def fsync(self, path: str, fh: int, datasync: bool) -> None:
        check(self._fs.flush_file_buffers(path))

    def release(self, path: str, fh: int) -> None:
        with self._handles_lock:
            self._handles.pop(fh, None)

        check(self._fs.cleanup(path))
        check(self._fs.close_file(path))

    #
    # Metadata access
    #

    def getattr(self, path: str, fh: Optional[int]) -> dict:
        status, info = self._fs.get_file_information(path)
        check(status)

        assert info is not None

        return self.stat_values(info)

    @staticmethod
    def stat_values(info: FileInformation) -> dict:
        """Build the stat data of an entry from its file information."""
        if info.is_directory:
            mode = stat.S_IFDIR | 0o755
            nlink = 2
        else:
            mode = stat.S_IFREG | 0o644
            nlink = 1

        if FileAttribute.READONLY in info.attributes:
            mode &= ~0o222

        return {
            "st_mode": mode,
            "st_nlink": nlink,
            "st_uid": os.getuid(),
            "st_gid": os.getgid(),
            "st_size": info.size,
            "st_blksize": BLOCK_SIZE,
            "st_blocks": (info.size + 511) // 512,
            "st_atime_ns": _nanoseconds(info.last_access_time),
            "st_mtime_ns": _nanoseconds(info.last_write_time),
            "st_ctime_ns": _nanoseconds(info.creation_time),
        }

    def readdir(self, path: str) -> List[str]:
        status, entries = self._fs.find_files(path)
        check(status)

        return [".", ".."] + [entry.name for entry in entries]

    def statfs(self, path: str) -> dict:
        status, space = self._fs.get_disk_free_space()
        check(status)

        return {
            "f_bsize": BLOCK_SIZE,
            "f_frsize": BLOCK_SIZE,
            "f_blocks": space.total_bytes // BLOCK_SIZE,
            "f_bfree": space.total_free_bytes // BLOCK_SIZE,
            "f_bavail": space.free_bytes_available // BLOCK_SIZE,
            "f_namemax": MAX_NAME_LENGTH,
        }

    #
    # Metadata modification
    #

    def chmod(self, path: str, fh: Optional[int], mode: int) -> None:
        if mode & 0o222:
            attributes = FileAttribute.NORMAL
        else:
            attributes = FileAttribute.READONLY

        check(self._fs.set_file_attributes(path, attributes))

    def chown(self, path: str, fh: Optional[int], uid: int, gid: int) -> None:
        check(self._fs.set_file_attributes(path, FileAttribute.NORMAL))

    def utimens(self, path: str, fh: Optional[int], times: Tuple[int, int]) -> None:
        atime, mtime = times
        check(self._fs.set_file_time(path, None, _datetime(atime), _datetime(mtime)))

    #
    # File system structure
    #

    def mkdir(self, path: str, mode: int) -> None:
        check(self._fs.open_or_create(path, True, Disposition.CREATE_NEW).status)

    def unlink(self, path: str) -> None:
        check(self._fs.delete_file(path))

    def rmdir(self, path: str) -> None:
        check(self._fs.delete_directory(path))

    def rename(self, old: str, new: str, flags: int) -> None:
        """Rename an entry, replacing the target unless RENAME_NOREPLACE is given."""
        if flags & RENAME_EXCHANGE:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))

        replace = not flags & RENAME_NOREPLACE
        check(self._fs.move_file(old, new, replace=replace))
