"""Mount a directory of a remote machine over SSH."""
