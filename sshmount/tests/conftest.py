"""Module that adds flags to pytest and provides a remote session backed by a directory."""

import os
import stat
from typing import BinaryIO, List

import pytest

from sshmount.filesystem.common import MountContext, RemoteAttributes, RemoteEntry
from sshmount.filesystem.filesystem import SshFileSystem
from sshmount.filesystem.session import RemoteSession, SessionManager


def pytest_addoption(parser):
    parser.addoption(
        "--fuse", action="store_true", default=False, help="Run FUSE tests"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "fuse: mark test as requiring FUSE to run")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--fuse"):
        skip_fuse = pytest.mark.skip(reason="only runs with --fuse option")

        for item in items:
            if "fuse" in item.keywords:
                item.add_marker(skip_fuse)


class LocalSession(RemoteSession):
    """Remote session that operates on the local file system instead of over SFTP."""

    def __init__(self, context: MountContext):
        self.context = context
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def stat(self, path: str) -> RemoteAttributes:
        return self._to_attributes(os.stat(path))

    def list_directory(self, path: str) -> List[RemoteEntry]:
        with os.scandir(path) as it:
            return [
                RemoteEntry(entry.name, self._to_attributes(entry.stat()))
                for entry in it
            ]

    def open_read(self, path: str) -> BinaryIO:
        return open(path, "rb")

    def open_write(self, path: str) -> BinaryIO:
        return open(path, "r+b")

    def create_empty(self, path: str) -> None:
        open(path, "wb").close()

    def delete(self, path: str) -> None:
        os.remove(path)

    def delete_directory(self, path: str) -> None:
        os.rmdir(path)

    def create_directory(self, path: str) -> None:
        os.mkdir(path)

    def rename(self, old: str, new: str, overwrite: bool = False) -> None:
        if overwrite:
            os.replace(old, new)
        elif os.path.lexists(new):
            raise FileExistsError(new)
        else:
            os.rename(old, new)

    def set_times(self, path: str, atime: float, mtime: float) -> None:
        os.utime(path, (atime, mtime))

    def truncate(self, path: str, size: int) -> None:
        os.truncate(path, size)

    @staticmethod
    def _to_attributes(st: os.stat_result) -> RemoteAttributes:
        return RemoteAttributes(
            is_directory=stat.S_ISDIR(st.st_mode),
            size=st.st_size,
            atime=st.st_atime,
            mtime=st.st_mtime,
        )


@pytest.fixture
def local_session_type():
    return LocalSession


@pytest.fixture
def remote_root(tmp_path):
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def mount_context(remote_root):
    return MountContext(
        user="user", host="example.com", password="secret", root=str(remote_root)
    )


@pytest.fixture
def sessions(mount_context):
    manager = SessionManager(mount_context, LocalSession)
    assert manager.connect()
    return manager


@pytest.fixture
def fs(sessions):
    return SshFileSystem(sessions)
