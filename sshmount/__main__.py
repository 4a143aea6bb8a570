"""
Module implementing the command-line interface and invoking the main logic of sshmount.

sshmount connects to a remote machine over SSH, opens an SFTP session and mounts a
directory of the remote machine as a local FUSE file system. The process stays in the
foreground until the file system is unmounted.
"""

import logging
import signal
import sys
from typing import List, NoReturn, Optional

import sshmount.constants as constants
from sshmount.logger import log
from sshmount.operations import MountOperations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Mount the remote file system with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.ERROR)

    ops = MountOperations(args)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to mount: {e}")
        exit_code = constants.SSHMOUNT_ERROR_CODE

    # Exit with 0 after a clean unmount or SSHMOUNT_ERROR_CODE for failures.
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
