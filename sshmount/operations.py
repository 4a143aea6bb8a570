"""Module that connects to the remote machine and mounts its file system."""

import contextlib
import getpass
import os
from typing import Optional

from sshmount.args import Arguments
from sshmount.config import Config
import sshmount.constants as constants
from sshmount.filesystem import (
    MountContext,
    MountedFileSystem,
    SessionManager,
    SftpSession,
    SshFileSystem,
)
from sshmount.filesystem.fuse import FUSE, FuseConfig
from sshmount.logger import log


class MountOperations:
    """Class that encapsulates connecting, mounting and cleaning up afterwards."""

    def __init__(self, args: Arguments):
        """Initialize mount operations based on the command-line arguments."""
        self._args = args
        self._config = Config()

    def run(self) -> int:
        """Run the operations and clean up properly in case of errors."""
        with contextlib.ExitStack() as stack:
            return self._run(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Connect, then block while the file system is mounted."""
        self._config = self._load_config()

        context = self._mount_context()
        sessions = SessionManager(context, self._open_session)

        if not sessions.connect():
            raise RuntimeError(f"could not connect to {context.host}")

        stack.callback(sessions.disconnect)

        fs = MountedFileSystem(
            SshFileSystem(sessions, self._config.mount),
            lambda: log.info(f"mounted {context.host} at {self._args.mountpoint}"),
        )

        instance = FUSE(fs, FuseConfig())
        status = instance.mount(constants.FILESYSTEM_NAME, self._args.mountpoint)

        if status != 0:
            log.error(f"mount at {self._args.mountpoint} failed ({status})")
            return constants.SSHMOUNT_ERROR_CODE

        return 0

    def _load_config(self) -> Config:
        """Load the config file and apply the command-line overrides."""
        config = Config.load(os.path.expanduser(self._args.config))

        if self._args.port is not None:
            config.connection.port = self._args.port

        if self._args.timeout is not None:
            config.connection.timeout = self._args.timeout

        if self._args.root is not None:
            config.mount.root = self._args.root

        return config

    def _mount_context(self) -> MountContext:
        """Describe the mount, prompting for the secret that authentication needs."""
        user = self._args.user
        host = self._args.host

        password: Optional[str] = None
        passphrase: Optional[str] = None

        if self._args.identity:
            identity = os.path.expanduser(self._args.identity)
            passphrase = getpass.getpass(f"Passphrase for {identity} (empty for none): ")
        else:
            identity = None
            password = getpass.getpass(f"{user}@{host}'s password: ")

        return MountContext(
            user=user,
            host=host,
            port=self._config.connection.port,
            password=password or None,
            identity=identity,
            passphrase=passphrase or None,
            root=self._config.mount.root,
            volume_label=self._args.label,
        )

    def _open_session(self, context: MountContext) -> SftpSession:
        return SftpSession.connect(context, self._config.connection)
