"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
import getpass
from typing import List, Optional, Tuple

from sshmount.constants import VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    destination: str
    mountpoint: str

    port: Optional[int]
    root: Optional[str]
    identity: Optional[str]
    label: str

    config: str

    debug: bool
    timeout: Optional[float]

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @property
    def user(self) -> str:
        """Return the user part of the destination, defaulting to the local user."""
        return self._split_destination()[0]

    @property
    def host(self) -> str:
        return self._split_destination()[1]

    def _split_destination(self) -> Tuple[str, str]:
        user, separator, host = self.destination.rpartition("@")

        if not separator:
            return getpass.getuser(), host

        return user, host

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Mount a directory of a remote machine over SSH.",
            usage="sshmount [option...] [user@]host mountpoint",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION}",
            help="show the program version",
        )

        # Primary arguments
        parser.add_argument(
            "destination", type=cls._parse_destination, help="remote host to mount"
        )
        parser.add_argument("mountpoint", type=str, help="local directory to mount on")

        # Connection options, these override the config file
        parser.add_argument("--port", type=cls._parse_port, help="SSH port")
        parser.add_argument(
            "--identity",
            type=str,
            help="private key file to authenticate with instead of a password",
        )
        parser.add_argument(
            "--timeout",
            type=cls._parse_timeout,
            help="timeout for establishing the connection in seconds",
        )

        # Mount options
        parser.add_argument(
            "--root", type=str, help="remote directory to mount (default is /)"
        )
        parser.add_argument(
            "--label", type=str, help="volume label of the mount", default="SSHFS"
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.sshmount/config)",
            default="~/.sshmount/config",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        return parser

    @staticmethod
    def _parse_destination(arg: str) -> str:
        if not arg.rpartition("@")[2]:
            raise argparse.ArgumentTypeError("expected [user@]host")

        return arg

    @staticmethod
    def _parse_port(arg: str) -> int:
        try:
            val = int(arg)
            assert 0 < val < 65536
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected port number between 1 and 65535")

    @staticmethod
    def _parse_timeout(arg: str) -> float:
        try:
            val = float(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
