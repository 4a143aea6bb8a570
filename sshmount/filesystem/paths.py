"""Module that maps host paths onto absolute paths on the remote machine."""

import posixpath

REMOTE_SEPARATOR = "/"
HOST_SEPARATOR = "\\"


class PathResolver:
    """
    Resolve paths handed out by the host relative to the configured remote root.

    Resolution is pure string manipulation. It never touches the remote session and it
    cannot fail. A path that already lies within the root keeps the root, which makes
    resolving idempotent. Components like . and .. are collapsed and a path can never
    leave the root.
    """

    def __init__(self, root: str):
        """Instantiate a resolver for the given remote root directory."""
        root = root.replace(HOST_SEPARATOR, REMOTE_SEPARATOR)

        # An empty root is the remote file system root.
        self._root = root.rstrip(REMOTE_SEPARATOR) or REMOTE_SEPARATOR
        self._prefix = self._root.rstrip(REMOTE_SEPARATOR) + REMOTE_SEPARATOR

    @property
    def root(self) -> str:
        return self._root

    def resolve(self, path: str) -> str:
        """Turn a host path into an absolute remote path."""
        normalized = path.replace(HOST_SEPARATOR, REMOTE_SEPARATOR)

        if normalized == self._root:
            return self._root

        if self._is_within_root(normalized):
            normalized = normalized[len(self._prefix) :]

        tail = self._collapse(normalized)

        if not tail:
            return self._root

        return self._prefix + tail

    def _is_within_root(self, path: str) -> bool:
        """Check if the path already has the shape of a resolved path."""
        if not path.startswith(self._prefix):
            return False

        tail = path[len(self._prefix) :]

        return not tail.startswith(REMOTE_SEPARATOR)

    @staticmethod
    def _collapse(tail: str) -> str:
        """Normalize a path relative to the root, with .. stopping at the root."""
        # normpath keeps a leading // so the separators are stripped first
        tail = REMOTE_SEPARATOR + tail.lstrip(REMOTE_SEPARATOR)

        return posixpath.normpath(tail).lstrip(REMOTE_SEPARATOR)
