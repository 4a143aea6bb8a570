"""
Module that owns the connection to the remote machine.

All remote I/O goes through a RemoteSession. The session reports failures with builtin
exceptions so that callers can tell them apart without knowing about paramiko:

* FileNotFoundError when the remote path does not exist
* PermissionError when the remote server denies access
* ConnectionError when the connection itself is gone
* anything else for generic protocol errors

The SessionManager keeps the one session that is shared by all file system threads and
replaces it when an operation reports that the connection was lost. Reconnection is
reactive. There is no health check loop because SFTP has no liveness check that is
cheaper than an actual operation.
"""

from __future__ import annotations

from abc import ABC
from contextlib import contextmanager
import os
import socket
import stat
import threading
from typing import Any, BinaryIO, Callable, cast, Iterator, List, Optional

import paramiko

from sshmount.config import ConnectionConfig
from sshmount.filesystem.common import MountContext, RemoteAttributes, RemoteEntry
from sshmount.logger import log, traced


class RemoteSession(ABC):
    """
    Base class for an authenticated session with the remote file system.

    Implementations must be safe to use from multiple threads at once. The mutators
    set_times() and truncate() are optional; sessions that can't support them raise
    NotImplementedError.
    """

    def disconnect(self) -> None:
        """Close the session."""
        raise NotImplementedError()

    def stat(self, path: str) -> RemoteAttributes:
        """Retrieve the attributes of a file system entry."""
        raise NotImplementedError()

    def list_directory(self, path: str) -> List[RemoteEntry]:
        """List the contents of a directory without the . and .. entries."""
        raise NotImplementedError()

    def open_read(self, path: str) -> BinaryIO:
        """Open a seekable stream for reading an existing file."""
        raise NotImplementedError()

    def open_write(self, path: str) -> BinaryIO:
        """Open a seekable stream for writing an existing file without truncating it."""
        raise NotImplementedError()

    def create_empty(self, path: str) -> None:
        """Create a zero-length file, replacing any existing contents."""
        raise NotImplementedError()

    def delete(self, path: str) -> None:
        """Remove a file."""
        raise NotImplementedError()

    def delete_directory(self, path: str) -> None:
        """Remove an empty directory."""
        raise NotImplementedError()

    def create_directory(self, path: str) -> None:
        """Create a directory."""
        raise NotImplementedError()

    def rename(self, old: str, new: str, overwrite: bool = False) -> None:
        """Rename a file system entry, optionally replacing an existing target."""
        raise NotImplementedError()

    def set_times(self, path: str, atime: float, mtime: float) -> None:
        """Change the access and modification time of a file system entry."""
        raise NotImplementedError()

    def truncate(self, path: str, size: int) -> None:
        """Change the size of a file."""
        raise NotImplementedError()


class SftpStream:
    """File object of an SftpSession that classifies errors like the session does."""

    def __init__(self, session: SftpSession, handle: paramiko.SFTPFile):
        self._session = session
        self._handle = handle

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        with self._session.classify_errors():
            self._handle.seek(offset, whence)
            return self._handle.tell()

    def read(self, size: int = -1) -> bytes:
        with self._session.classify_errors():
            return self._handle.read(size if size >= 0 else None)

    def write(self, data: bytes) -> int:
        with self._session.classify_errors():
            self._handle.write(data)
            return len(data)

    def close(self) -> None:
        with self._session.classify_errors():
            self._handle.close()

    def __enter__(self) -> SftpStream:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class SftpSession(RemoteSession):
    """Remote session on top of a paramiko SSH connection with an SFTP channel."""

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient):
        """Wrap an already connected SSH client and its SFTP channel."""
        self._client = client
        self._sftp = sftp

    @staticmethod
    def connect(context: MountContext, config: ConnectionConfig) -> SftpSession:
        """
        Connect and authenticate to the host described by the mount context.

        Exactly one authentication method is attempted: the password if the context has
        one, otherwise the identity file with its passphrase. Keys from an SSH agent or
        from ~/.ssh are never tried implicitly.
        """
        client = paramiko.SSHClient()
        client.load_system_host_keys()

        if config.strict_host_keys:
            if os.path.exists(config.known_hosts):
                client.load_host_keys(config.known_hosts)

            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        credentials: dict

        if context.uses_password:
            credentials = dict(password=context.password)
        else:
            credentials = dict(
                key_filename=context.identity, passphrase=context.passphrase
            )

        try:
            with traced("ssh", "connect", context.host, context.port):
                client.connect(
                    hostname=context.host,
                    port=context.port,
                    username=context.user,
                    timeout=config.timeout,
                    allow_agent=False,
                    look_for_keys=False,
                    **credentials,
                )

                sftp = client.open_sftp()
        except Exception:
            client.close()
            raise

        log.info(f"connected to {context.user}@{context.host}:{context.port}")

        return SftpSession(client, sftp)

    def is_active(self) -> bool:
        """Check if the underlying SSH transport is still usable."""
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    @contextmanager
    def classify_errors(self) -> Iterator[None]:
        """Turn transport-level failures from paramiko into ConnectionError."""
        try:
            yield
        except (FileNotFoundError, PermissionError, ConnectionError):
            raise
        except (paramiko.SSHException, EOFError, socket.timeout) as e:
            raise ConnectionError(f"connection lost: {e}") from e
        except OSError as e:
            # paramiko reports a closed channel as a plain socket error
            if not self.is_active():
                raise ConnectionError(f"connection lost: {e}") from e

            raise

    def _call(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        with traced("sftp", name, *args), self.classify_errors():
            return fn(*args)

    def disconnect(self) -> None:
        try:
            self._sftp.close()
        finally:
            self._client.close()

    def stat(self, path: str) -> RemoteAttributes:
        return self._to_attributes(self._call("stat", self._sftp.stat, path))

    def list_directory(self, path: str) -> List[RemoteEntry]:
        entries = self._call("listdir_attr", self._sftp.listdir_attr, path)

        return [
            RemoteEntry(entry.filename, self._to_attributes(entry))
            for entry in entries
            if entry.filename not in (".", "..")
        ]

    def open_read(self, path: str) -> BinaryIO:
        handle = self._call("open", self._sftp.open, path, "rb")
        return cast(BinaryIO, SftpStream(self, handle))

    def open_write(self, path: str) -> BinaryIO:
        handle = self._call("open", self._sftp.open, path, "r+b")
        return cast(BinaryIO, SftpStream(self, handle))

    def create_empty(self, path: str) -> None:
        handle = self._call("open", self._sftp.open, path, "wb")

        with self.classify_errors():
            handle.close()

    def delete(self, path: str) -> None:
        self._call("remove", self._sftp.remove, path)

    def delete_directory(self, path: str) -> None:
        self._call("rmdir", self._sftp.rmdir, path)

    def create_directory(self, path: str) -> None:
        self._call("mkdir", self._sftp.mkdir, path)

    def rename(self, old: str, new: str, overwrite: bool = False) -> None:
        """
        Rename a file system entry.

        Replacing a target relies on the posix-rename OpenSSH extension because plain
        SFTP rename fails if the target exists. Servers without the extension get the
        target removed first, which is not atomic.
        """
        if overwrite:
            try:
                self._call("posix_rename", self._sftp.posix_rename, old, new)
                return
            except (FileNotFoundError, PermissionError, ConnectionError):
                raise
            except OSError as e:
                if not self._is_unsupported(e):
                    raise

            log.debug(f"posix-rename unsupported, removing {new} before renaming")

            try:
                self._call("remove", self._sftp.remove, new)
            except FileNotFoundError:
                pass

        self._call("rename", self._sftp.rename, old, new)

    @staticmethod
    def _is_unsupported(e: OSError) -> bool:
        # paramiko only sets errno for missing files and denied access
        unsupported = paramiko.sftp.SFTP_DESC[paramiko.sftp.SFTP_OP_UNSUPPORTED]
        return e.errno is None and str(e).lower() == unsupported.lower()

    def set_times(self, path: str, atime: float, mtime: float) -> None:
        self._call("utime", self._sftp.utime, path, (atime, mtime))

    def truncate(self, path: str, size: int) -> None:
        self._call("truncate", self._sftp.truncate, path, size)

    @staticmethod
    def _to_attributes(attrs: paramiko.SFTPAttributes) -> RemoteAttributes:
        return RemoteAttributes(
            is_directory=stat.S_ISDIR(attrs.st_mode or 0),
            size=attrs.st_size or 0,
            atime=attrs.st_atime or 0,
            mtime=attrs.st_mtime or 0,
        )


class ConnectionFaultState:
    """
    Shared record of whether the remote session is believed to be broken.

    The lock is the reconnect mutex and is held for the whole reconnect. The guard only
    protects swapping the session together with the flag, so raising the flag never
    waits for a reconnect in progress.

    Once closed, the session was disconnected on purpose and is never reopened.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.guard = threading.Lock()
        self.faulted = False
        self.closed = False
        self.retries = 0


SessionFactory = Callable[[MountContext], RemoteSession]


class SessionManager:
    """
    Owner of the single remote session shared by all file system operations.

    Operations read the current session without locking. When one of them observes a
    connection failure it calls mark_faulted() followed by reconnect(). Concurrent
    failures result in a single reconnect because only the first caller to acquire the
    reconnect mutex still finds the fault flag raised.
    """

    def __init__(
        self,
        context: MountContext,
        factory: SessionFactory,
        fault_state: Optional[ConnectionFaultState] = None,
    ):
        """Instantiate with the mount context and a function that opens sessions."""
        self._context = context
        self._factory = factory
        self._fault = fault_state or ConnectionFaultState()

        self._session: Optional[RemoteSession] = None

    @property
    def context(self) -> MountContext:
        return self._context

    @property
    def session(self) -> RemoteSession:
        """Return the active session handle."""
        session = self._session

        if session is None:
            raise ConnectionError("not connected")

        return session

    @property
    def faulted(self) -> bool:
        return self._fault.faulted

    @property
    def retry_count(self) -> int:
        """Return the number of reconnect attempts since startup (diagnostic only)."""
        return self._fault.retries

    def connect(self) -> bool:
        """Open a new session, replacing the current one and its fault on success."""
        try:
            session = self._factory(self._context)
        except Exception as e:
            log.error(
                f"failed to connect to {self._context.host}:{self._context.port}: {e}"
            )
            return False

        with self._fault.guard:
            self._session = session
            self._fault.faulted = False

        return True

    def disconnect(self) -> None:
        """
        Close and forget the current session, logging rather than raising failures.

        This is final. A pending fault is discarded and later reconnects fail instead of
        opening a new session.
        """
        with self._fault.lock:
            with self._fault.guard:
                session, self._session = self._session, None
                self._fault.faulted = False
                self._fault.closed = True

        if session is not None:
            self._close(session)

    @staticmethod
    def _close(session: RemoteSession) -> None:
        try:
            session.disconnect()
        except Exception as e:
            log.warning(f"failed to disconnect: {e}")
        else:
            log.info("disconnected")

    def mark_faulted(self, session: Optional[RemoteSession] = None) -> None:
        """
        Record that the connection is broken.

        If the caller passes the session that it saw failing and that session has since
        been replaced, the fault has already been repaired and nothing is recorded.
        """
        with self._fault.guard:
            if self._fault.closed:
                return

            if session is not None and session is not self._session:
                log.debug("ignoring connection failure of a replaced session")
                return

            self._fault.faulted = True

    def reconnect(self) -> bool:
        """Replace a faulted session, unless another thread already did so."""
        with self._fault.lock:
            if self._fault.closed:
                log.debug("not reconnecting a closed session")
                return False

            if not self._fault.faulted:
                return True

            # The faulted session stays current until it is replaced, so that late
            # failures on it are still recognized as the same fault.
            if self._session is not None:
                log.info("disconnecting faulted session")
                self._close(self._session)

            self._fault.retries += 1
            log.info(f"reconnecting (attempt {self._fault.retries})")

            if self.connect():
                log.info("reconnect succeeded")
                return True
            else:
                log.error("reconnect failed")
                return False

    def repair(self) -> bool:
        """Reconnect first if a previous operation left the session faulted."""
        if self._fault.closed:
            return False

        if self._fault.faulted:
            return self.reconnect()

        return True
