"""Expose a remote directory tree over SFTP to a replicating file system host."""
