"""Data structures used by multiple file system components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import auto, Enum, IntFlag
from typing import Optional


class Status(Enum):
    """Status codes returned to the host for every file system operation."""

    SUCCESS = auto()
    NAME_NOT_FOUND = auto()
    NAME_COLLISION = auto()
    ACCESS_DENIED = auto()
    PATH_NOT_FOUND = auto()
    NOT_A_DIRECTORY = auto()
    ERROR = auto()
    NOT_IMPLEMENTED = auto()


class Disposition(Enum):
    """What the host wants to happen when it opens or creates a path."""

    OPEN = auto()
    CREATE_NEW = auto()
    CREATE = auto()
    OPEN_OR_CREATE = auto()
    TRUNCATE = auto()
    APPEND = auto()


class FileAttribute(IntFlag):
    """Attribute flags of a host file information record."""

    READONLY = 0x1
    HIDDEN = 0x2
    DIRECTORY = 0x10
    NORMAL = 0x80
    OFFLINE = 0x1000


class FileSystemFeature(IntFlag):
    """Capabilities advertised with the volume information."""

    CASE_SENSITIVE_SEARCH = 0x1
    CASE_PRESERVED_NAMES = 0x2
    UNICODE_ON_DISK = 0x4
    SUPPORTS_REMOTE_STORAGE = 0x100


@dataclass(frozen=True)
class MountContext:
    """
    Immutable configuration of a single mount.

    A non-empty password selects password authentication, otherwise the identity file
    and its passphrase are used. Mounting again means creating a new context.
    """

    user: str
    host: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    identity: Optional[str] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    root: str = "/"
    volume_label: str = "SSHFS"

    @property
    def uses_password(self) -> bool:
        """Check if password authentication is used instead of a private key."""
        return bool(self.password)


@dataclass(frozen=True)
class RemoteAttributes:
    """Metadata of a remote file system entry, timestamps are in seconds."""

    is_directory: bool
    size: int
    atime: float
    mtime: float


@dataclass(frozen=True)
class RemoteEntry:
    """Single entry of a remote directory listing."""

    name: str
    attributes: RemoteAttributes


@dataclass(frozen=True)
class PathState:
    """Result of checking whether a remote path exists."""

    exists: bool
    is_directory: bool = False

    @staticmethod
    def absent() -> PathState:
        return PathState(exists=False)

    @staticmethod
    def present(is_directory: bool) -> PathState:
        return PathState(exists=True, is_directory=is_directory)


@dataclass(frozen=True)
class OpenResult:
    """Outcome of opening or creating a path on behalf of the host."""

    status: Status
    is_directory: bool = False


@dataclass
class FileInformation:
    """Host view of a file system entry, constructed fresh for every request."""

    name: str
    attributes: FileAttribute
    size: int
    creation_time: datetime
    last_access_time: datetime
    last_write_time: datetime

    @property
    def is_directory(self) -> bool:
        return FileAttribute.DIRECTORY in self.attributes


@dataclass(frozen=True)
class DiskSpace:
    """Capacity information reported to the host."""

    free_bytes_available: int
    total_bytes: int
    total_free_bytes: int


@dataclass(frozen=True)
class VolumeInformation:
    """Label, name and capabilities of the mounted volume."""

    volume_label: str
    filesystem_name: str
    features: FileSystemFeature
