"""
Modules that expose a directory tree on a remote machine as a local file system.

The remote machine only needs to run an SSH server with the SFTP subsystem enabled.
sshmount opens one authenticated SFTP session and mounts a FUSE file system that
forwards every call to it:

* paths: maps paths as seen by the host onto remote paths below the configured root
* session: owns the remote session and replaces it when the connection is lost
* attributes: translates remote metadata and decides what an open request should do
* filesystem: the operations themselves, which report their outcome with a Status
* host: adapter between FUSE and the operations

Nothing is cached locally. Every read, write and listing results in a round trip to the
remote machine, so other clients of the remote file system see changes immediately.
"""

from .common import Disposition, MountContext, Status
from .filesystem import SshFileSystem
from .host import MountedFileSystem
from .paths import PathResolver
from .session import ConnectionFaultState, SessionManager, SftpSession

__all__ = [
    "ConnectionFaultState",
    "Disposition",
    "MountContext",
    "MountedFileSystem",
    "PathResolver",
    "SessionManager",
    "SftpSession",
    "SshFileSystem",
    "Status",
]
