"""
Modules that talk SFTP to a remote target.

A single SSH connection with one SFTP channel is kept per target and shared by all
callers. It is established on first use and re-established transparently once the
transport reports that it's gone. Operations on top of it translate file system verbs
into SFTP calls and never retry on their own, since retrying a write or rename could
apply it twice.

The modules are imported directly (e.g. sftpbridge.sftp.operations) because the target
registry depends on the path helpers in sftpbridge.sftp.common.
"""
