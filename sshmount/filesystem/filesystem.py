"""Module that contains the file system operations performed on the remote session."""

from datetime import datetime
import functools
import traceback
from typing import Any, Callable, cast, List, Optional, Tuple, TypeVar

from sshmount.config import MountConfig
import sshmount.constants as constants
from sshmount.filesystem.attributes import (
    AttributeTranslator,
    needs_path_state,
    OpenAction,
    plan_open_directory,
    plan_open_file,
)
from sshmount.filesystem.common import (
    Disposition,
    DiskSpace,
    FileAttribute,
    FileInformation,
    FileSystemFeature,
    OpenResult,
    PathState,
    RemoteAttributes,
    Status,
    VolumeInformation,
)
from sshmount.filesystem.paths import PathResolver
from sshmount.filesystem.patterns import MATCH_ALL, name_matches
from sshmount.filesystem.session import RemoteSession, SessionManager
from sshmount.logger import log, traced

F = TypeVar("F", bound=Callable[..., Any])

VOLUME_FEATURES = (
    FileSystemFeature.CASE_PRESERVED_NAMES
    | FileSystemFeature.CASE_SENSITIVE_SEARCH
    | FileSystemFeature.UNICODE_ON_DISK
    | FileSystemFeature.SUPPORTS_REMOTE_STORAGE
)

_FAILED_ACTIONS = {
    OpenAction.FAIL_NOT_FOUND: Status.NAME_NOT_FOUND,
    OpenAction.FAIL_COLLISION: Status.NAME_COLLISION,
    OpenAction.FAIL_NOT_DIRECTORY: Status.NOT_A_DIRECTORY,
    OpenAction.FAIL_INVALID: Status.ERROR,
}


def _status_only(status: Status) -> Any:
    return status


def _operation(
    not_found: Status = Status.NAME_NOT_FOUND,
    failure: Callable[[Status], Any] = _status_only,
) -> Callable[[F], F]:
    """
    Decorate a method that needs the remote session.

    The method is called with the current session as its first argument after self and
    every exception it raises is translated into a status code. The failure function
    turns that status into the return value of the method.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(self: "SshFileSystem", *args: Any, **kwargs: Any) -> Any:
            return self._dispatch(fn, not_found, failure, args, kwargs)

        return cast(F, wrapper)

    return decorator


class SshFileSystem:
    """
    File system operations on top of a remote session.

    Every host callback is implemented here and reports its outcome with a Status. The
    methods are invoked concurrently from the host's worker threads and share a single
    session. No operation is serialized except reconnecting, so two requests racing on
    the same remote file behave exactly as the remote server lets them.

    When an operation loses the connection it marks the session as faulted, makes one
    attempt to reconnect and still fails with Status.ERROR. The host is expected to
    issue the request again. Operations started while the session is faulted first try
    to repair it and fail without touching the session if that doesn't work.
    """

    def __init__(self, sessions: SessionManager, config: Optional[MountConfig] = None):
        """Instantiate with the session manager of a connected mount."""
        self._sessions = sessions
        self._config = config or MountConfig()

        self._paths = PathResolver(sessions.context.root)
        self._translator = AttributeTranslator(offline=self._config.offline_attribute)

    def _dispatch(
        self,
        fn: Callable[..., Any],
        not_found: Status,
        failure: Callable[[Status], Any],
        args: tuple,
        kwargs: dict,
    ) -> Any:
        """Call an operation with the current session and translate its errors."""
        name = fn.__name__

        if not self._sessions.repair():
            log.debug(f"fs::{name}() skipped while disconnected")
            return failure(Status.ERROR)

        try:
            session = self._sessions.session
        except ConnectionError:
            # Disconnected on purpose, there is nothing to reconnect
            log.debug(f"fs::{name}() called without a session")
            return failure(Status.ERROR)

        try:
            with traced("fs", name, *args):
                return fn(self, session, *args, **kwargs)
        except FileNotFoundError:
            status = not_found
        except PermissionError:
            status = Status.ACCESS_DENIED
        except ConnectionError as e:
            log.warning(f"fs::{name}() lost the connection: {e}")

            self._sessions.mark_faulted(session)
            self._sessions.reconnect()

            status = Status.ERROR
        except Exception:
            log.warning(f"fs::{name}() raised an unexpected exception:")
            log.warning(traceback.format_exc())

            status = Status.ERROR

        return failure(status)

    def _path_state(self, session: RemoteSession, path: str) -> PathState:
        attrs: Optional[RemoteAttributes]

        try:
            attrs = session.stat(path)
        except FileNotFoundError:
            attrs = None

        return self._translator.path_state(attrs)

    #
    # Opening and creating
    #

    @_operation(failure=OpenResult)
    def open_or_create(
        self,
        session: RemoteSession,
        path: str,
        is_directory: bool,
        disposition: Disposition,
    ) -> OpenResult:
        """Open or create a file or directory according to the disposition."""
        remote_path = self._paths.resolve(path)

        state: Optional[PathState] = None

        if is_directory:
            state = self._path_state(session, remote_path)
            action = plan_open_directory(disposition, state)
        else:
            if needs_path_state(disposition):
                state = self._path_state(session, remote_path)

            action = plan_open_file(disposition, state)

        if action == OpenAction.CREATE_DIRECTORY:
            session.create_directory(remote_path)
            return OpenResult(Status.SUCCESS, is_directory=True)
        elif action == OpenAction.CREATE_EMPTY:
            session.create_empty(remote_path)
            return OpenResult(Status.SUCCESS, is_directory=False)
        elif action == OpenAction.SUCCEED:
            return OpenResult(
                Status.SUCCESS, is_directory=state is not None and state.is_directory
            )
        else:
            if action == OpenAction.FAIL_INVALID:
                log.debug(f"fs::open_or_create() invalid disposition {disposition}")

            return OpenResult(_FAILED_ACTIONS[action], is_directory=is_directory)

    def cleanup(self, path: str) -> Status:
        return Status.SUCCESS

    def close_file(self, path: str) -> Status:
        return Status.SUCCESS

    #
    # File contents
    #

    @_operation(failure=lambda status: (status, b""))
    def read_file(
        self,
        session: RemoteSession,
        path: str,
        size: int,
        offset: int,
        is_directory: bool = False,
    ) -> Tuple[Status, bytes]:
        """Read at most size bytes at the offset, returning no data at end-of-file."""
        if is_directory:
            return Status.ERROR, b""

        with session.open_read(self._paths.resolve(path)) as stream:
            stream.seek(offset)
            data = stream.read(size)

        return Status.SUCCESS, data

    @_operation(failure=lambda status: (status, 0))
    def write_file(
        self, session: RemoteSession, path: str, data: bytes, offset: int
    ) -> Tuple[Status, int]:
        """
        Write the whole buffer at the offset.

        Generic I/O errors are reported as a successful write unless strict writes are
        enabled. Missing files, denied access and lost connections still fail.
        """
        try:
            with session.open_write(self._paths.resolve(path)) as stream:
                stream.seek(offset)
                stream.write(data)
        except (FileNotFoundError, PermissionError, ConnectionError):
            raise
        except OSError as e:
            if self._config.strict_writes:
                raise

            log.warning(f"fs::write_file() ignoring I/O error on {path}: {e}")

        return Status.SUCCESS, len(data)

    def flush_file_buffers(self, path: str) -> Status:
        return Status.SUCCESS

    @_operation()
    def set_end_of_file(self, session: RemoteSession, path: str, length: int) -> Status:
        """Grow a file to the given length. Files are never shrunk this way."""
        return self._grow(session, path, length)

    @_operation()
    def set_allocation_size(
        self, session: RemoteSession, path: str, length: int
    ) -> Status:
        """Grow a file to the given length. Files are never shrunk this way."""
        return self._grow(session, path, length)

    def _grow(self, session: RemoteSession, path: str, length: int) -> Status:
        remote_path = self._paths.resolve(path)
        attrs = session.stat(remote_path)

        if length > attrs.size:
            try:
                session.truncate(remote_path, length)
            except NotImplementedError:
                log.debug(f"fs::_grow() size change of {path} ignored")

        return Status.SUCCESS

    def lock_file(self, path: str, offset: int, length: int) -> Status:
        return Status.SUCCESS

    def unlock_file(self, path: str, offset: int, length: int) -> Status:
        return Status.SUCCESS

    #
    # Metadata access
    #

    @_operation(failure=lambda status: (status, None))
    def get_file_information(
        self, session: RemoteSession, path: str
    ) -> Tuple[Status, Optional[FileInformation]]:
        """Retrieve the attributes of a file or directory."""
        remote_path = self._paths.resolve(path)
        attrs = session.stat(remote_path)

        return Status.SUCCESS, self._translator.file_information(remote_path, attrs)

    @_operation(not_found=Status.PATH_NOT_FOUND, failure=lambda status: (status, []))
    def find_files(
        self, session: RemoteSession, path: str
    ) -> Tuple[Status, List[FileInformation]]:
        """List all entries of a directory."""
        return Status.SUCCESS, self._list(session, path, MATCH_ALL)

    @_operation(not_found=Status.PATH_NOT_FOUND, failure=lambda status: (status, []))
    def find_files_with_pattern(
        self, session: RemoteSession, path: str, pattern: str
    ) -> Tuple[Status, List[FileInformation]]:
        """List the entries of a directory with names that match a search pattern."""
        return Status.SUCCESS, self._list(session, path, pattern)

    def _list(
        self, session: RemoteSession, path: str, pattern: str
    ) -> List[FileInformation]:
        entries = session.list_directory(self._paths.resolve(path))
        ignore_case = self._config.case_insensitive_match

        return [
            self._translator.entry_information(entry)
            for entry in entries
            if name_matches(pattern, entry.name, ignore_case)
        ]

    def find_streams(self, path: str) -> Tuple[Status, List[FileInformation]]:
        """Alternate data streams exist on some hosts but are not supported."""
        return Status.NOT_IMPLEMENTED, []

    #
    # Metadata modification
    #

    @_operation()
    def set_file_attributes(
        self, session: RemoteSession, path: str, attributes: FileAttribute
    ) -> Status:
        """Accept new attribute flags for an existing path without applying them."""
        session.stat(self._paths.resolve(path))

        return Status.SUCCESS

    @_operation()
    def set_file_time(
        self,
        session: RemoteSession,
        path: str,
        creation_time: Optional[datetime],
        last_access_time: Optional[datetime],
        last_write_time: Optional[datetime],
    ) -> Status:
        """
        Change the access and modification time of a path.

        The creation time can't be stored remotely and is ignored. If the session has no
        way to change times then the request is accepted without effect.
        """
        if last_access_time is None and last_write_time is None:
            return Status.SUCCESS

        remote_path = self._paths.resolve(path)

        if last_access_time is None or last_write_time is None:
            current = session.stat(remote_path)

            atime = last_access_time.timestamp() if last_access_time else current.atime
            mtime = last_write_time.timestamp() if last_write_time else current.mtime
        else:
            atime = last_access_time.timestamp()
            mtime = last_write_time.timestamp()

        try:
            session.set_times(remote_path, atime, mtime)
        except NotImplementedError:
            log.debug(f"fs::set_file_time() times of {path} ignored")

        return Status.SUCCESS

    def get_file_security(self, path: str) -> Status:
        return Status.ERROR

    def set_file_security(self, path: str, security: Any) -> Status:
        return Status.ERROR

    #
    # File system structure
    #

    @_operation()
    def delete_file(self, session: RemoteSession, path: str) -> Status:
        session.delete(self._paths.resolve(path))
        return Status.SUCCESS

    @_operation()
    def delete_directory(self, session: RemoteSession, path: str) -> Status:
        session.delete_directory(self._paths.resolve(path))
        return Status.SUCCESS

    @_operation()
    def move_file(
        self, session: RemoteSession, old: str, new: str, replace: bool = False
    ) -> Status:
        """Rename a path, failing if the target exists unless replace is set."""
        old_path = self._paths.resolve(old)
        new_path = self._paths.resolve(new)

        if not replace and self._path_state(session, new_path).exists:
            return Status.NAME_COLLISION

        session.rename(old_path, new_path, overwrite=replace)

        return Status.SUCCESS

    #
    # Volume
    #

    def get_disk_free_space(self) -> Tuple[Status, DiskSpace]:
        return (
            Status.SUCCESS,
            DiskSpace(
                free_bytes_available=constants.DISK_FREE_BYTES,
                total_bytes=constants.DISK_TOTAL_BYTES,
                total_free_bytes=constants.DISK_FREE_BYTES,
            ),
        )

    def get_volume_information(self) -> Tuple[Status, VolumeInformation]:
        return (
            Status.SUCCESS,
            VolumeInformation(
                volume_label=self._sessions.context.volume_label,
                filesystem_name=constants.FILESYSTEM_NAME,
                features=VOLUME_FEATURES,
            ),
        )

    def mounted(self) -> Status:
        return Status.SUCCESS

    def unmounted(self) -> Status:
        """Disconnect from the remote end. Unmounting itself never fails."""
        self._sessions.disconnect()
        return Status.SUCCESS
