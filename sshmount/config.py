"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os

from sshmount.logger import log


@dataclass
class ConnectionConfig:
    """Configuration variables related to the SSH connection."""

    port: int = 22
    timeout: float = 10.0

    # Unknown host keys are accepted unless strict checking is enabled.
    strict_host_keys: bool = False
    known_hosts: str = os.path.expanduser("~/.ssh/known_hosts")

    @staticmethod
    def load(section: SectionProxy) -> ConnectionConfig:
        """Load overridden variables from a section within a config file."""
        config = ConnectionConfig()

        config.port = section.getint("port", fallback=config.port)
        config.timeout = section.getfloat("timeout", fallback=config.timeout)

        config.strict_host_keys = section.getboolean(
            "strict_host_keys", fallback=config.strict_host_keys
        )
        config.known_hosts = os.path.expanduser(
            section.get("known_hosts", fallback=config.known_hosts)
        )

        return config


@dataclass
class MountConfig:
    """Configuration variables related to the mounted file system."""

    root: str = "/"

    # Report failed writes to the host instead of the legacy optimistic success.
    strict_writes: bool = False

    offline_attribute: bool = False
    case_insensitive_match: bool = True

    @staticmethod
    def load(section: SectionProxy) -> MountConfig:
        """Load overridden variables from a section within a config file."""
        config = MountConfig()

        config.root = section.get("root", fallback=config.root)

        config.strict_writes = section.getboolean(
            "strict_writes", fallback=config.strict_writes
        )
        config.offline_attribute = section.getboolean(
            "offline_attribute", fallback=config.offline_attribute
        )
        config.case_insensitive_match = section.getboolean(
            "case_insensitive_match", fallback=config.case_insensitive_match
        )

        return config


@dataclass
class Config:
    """Configuration variables."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    mount: MountConfig = field(default_factory=MountConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "connection" in parser:
                config.connection = ConnectionConfig.load(parser["connection"])

            if "mount" in parser:
                config.mount = MountConfig.load(parser["mount"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
