# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
sftpfs: filesystems over SFTP, in both directions.

The client face, L{sftpfs.connect.connect}, presents a remote SFTP server as
an L{sftpfs.interfaces.IFilesystem}.  The server face,
L{sftpfs.server.SFTPServerFactory}, serves any L{IFilesystem
<sftpfs.interfaces.IFilesystem>} to SSH clients.
"""

from sftpfs.connect import ClientConfig, connect, dial, dialWithKey
from sftpfs.error import (
    AuthenticationFailed,
    ConnectError,
    HostKeyRejected,
    UnsupportedOperation,
    isAuthenticationFailed,
    isExists,
    isNotFound,
)
from sftpfs.filesystem import SFTPFilesystem
from sftpfs.info import DirEntry, FileInfo
from sftpfs.memory import MemoryFilesystem
from sftpfs.osfs import OSFilesystem
from sftpfs.server import (
    SFTPServerFactory,
    ServerConfig,
    multiUserPasswordAuth,
    simplePasswordAuth,
)

__version__ = "1.0.0"

__all__ = [
    "AuthenticationFailed",
    "ClientConfig",
    "ConnectError",
    "DirEntry",
    "FileInfo",
    "HostKeyRejected",
    "MemoryFilesystem",
    "OSFilesystem",
    "SFTPFilesystem",
    "SFTPServerFactory",
    "ServerConfig",
    "UnsupportedOperation",
    "connect",
    "dial",
    "dialWithKey",
    "isAuthenticationFailed",
    "isExists",
    "isNotFound",
    "multiUserPasswordAuth",
    "simplePasswordAuth",
]
