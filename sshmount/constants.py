"""Module defining various global constants."""

# sshmount version
VERSION = "1.0.0"

# Special exit code for when sshmount itself fails.
SSHMOUNT_ERROR_CODE = 254

# Name of the FUSE file system
FILESYSTEM_NAME = "sshmount"

# Placeholder capacity reported to the host, the remote end is never queried for it.
GB = 1024 * 1024 * 1024

DISK_TOTAL_BYTES = 20 * GB
DISK_FREE_BYTES = 10 * GB
