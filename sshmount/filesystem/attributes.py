"""
Module that translates between remote metadata and the host's view of files.

Remote entries only know their type, size and access/modification times. The host
expects attribute flags and three timestamps, so the creation time is approximated with
the modification time. Requests flowing the other way, like opening a path with a
certain disposition, are translated into the action to perform on the remote end.
"""

from datetime import datetime, timezone
from enum import auto, Enum
import posixpath
from typing import Optional

from sshmount.filesystem.common import (
    Disposition,
    FileAttribute,
    FileInformation,
    PathState,
    RemoteAttributes,
    RemoteEntry,
)


class OpenAction(Enum):
    """Remote action that satisfies an open or create request."""

    SUCCEED = auto()
    CREATE_EMPTY = auto()
    CREATE_DIRECTORY = auto()
    FAIL_NOT_FOUND = auto()
    FAIL_COLLISION = auto()
    FAIL_NOT_DIRECTORY = auto()
    FAIL_INVALID = auto()


def needs_path_state(disposition: Disposition) -> bool:
    """Check if the outcome of a file request depends on whether the path exists."""
    return disposition != Disposition.CREATE


def plan_open_file(
    disposition: Disposition, state: Optional[PathState]
) -> OpenAction:
    """
    Decide what to do for a file request.

    The state may only be omitted for dispositions that don't need it.
    """
    if disposition == Disposition.CREATE:
        return OpenAction.CREATE_EMPTY

    assert state is not None

    if disposition == Disposition.OPEN:
        return OpenAction.SUCCEED if state.exists else OpenAction.FAIL_NOT_FOUND
    elif disposition == Disposition.CREATE_NEW:
        return OpenAction.FAIL_COLLISION if state.exists else OpenAction.CREATE_EMPTY
    elif disposition in (Disposition.OPEN_OR_CREATE, Disposition.APPEND):
        return OpenAction.SUCCEED if state.exists else OpenAction.CREATE_EMPTY
    elif disposition == Disposition.TRUNCATE:
        return OpenAction.CREATE_EMPTY if state.exists else OpenAction.FAIL_NOT_FOUND
    else:
        return OpenAction.FAIL_INVALID


def plan_open_directory(disposition: Disposition, state: PathState) -> OpenAction:
    """Decide what to do for a directory request."""
    if disposition == Disposition.OPEN:
        if not state.exists:
            return OpenAction.FAIL_NOT_FOUND
        elif not state.is_directory:
            return OpenAction.FAIL_NOT_DIRECTORY
        else:
            return OpenAction.SUCCEED
    elif disposition == Disposition.CREATE_NEW:
        if state.exists:
            return OpenAction.FAIL_COLLISION
        else:
            return OpenAction.CREATE_DIRECTORY
    else:
        return OpenAction.FAIL_INVALID


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class AttributeTranslator:
    """Builds host file information records from remote attributes."""

    def __init__(self, offline: bool = False):
        """
        Instantiate the translator.

        If offline is set then every entry is flagged as offline, which tells hosts like
        file browsers not to open files just to generate previews.
        """
        self._offline = offline

    def flags(self, name: str, attrs: RemoteAttributes) -> FileAttribute:
        """Derive the attribute flags of an entry."""
        if attrs.is_directory:
            flags = FileAttribute.DIRECTORY
        else:
            flags = FileAttribute.NORMAL

        if name.startswith(".") and name not in (".", ".."):
            flags |= FileAttribute.HIDDEN

        if self._offline:
            flags |= FileAttribute.OFFLINE

        return flags

    def file_information(self, path: str, attrs: RemoteAttributes) -> FileInformation:
        """Translate the attributes of the entry at the given remote path."""
        name = posixpath.basename(path.rstrip("/")) or "/"

        return FileInformation(
            name=name,
            attributes=self.flags(name, attrs),
            size=attrs.size,
            creation_time=_timestamp(attrs.mtime),
            last_access_time=_timestamp(attrs.atime),
            last_write_time=_timestamp(attrs.mtime),
        )

    def entry_information(self, entry: RemoteEntry) -> FileInformation:
        """Translate a single entry of a directory listing."""
        return self.file_information(entry.name, entry.attributes)

    @staticmethod
    def path_state(attrs: Optional[RemoteAttributes]) -> PathState:
        """Describe whether a path exists given its attributes, if any."""
        if attrs is None:
            return PathState.absent()

        return PathState.present(attrs.is_directory)
