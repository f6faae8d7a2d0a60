# -*- test-case-name: sftpfs.test.test_client -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
L{ISFTPClient} on top of L{twisted.conch.ssh.filetransfer.FileTransferClient}.
"""

from __future__ import annotations

import os
import posixpath
import stat
from typing import Any, Callable, List

from zope.interface import implementer

from twisted.conch.ssh import filetransfer
from twisted.internet import defer
from twisted.logger import Logger

from sftpfs.info import FileInfo
from sftpfs.interfaces import ISFTPClientFile, ISymlinkClient

_log = Logger()

_ACCESS = {
    os.O_RDONLY: filetransfer.FXF_READ,
    os.O_WRONLY: filetransfer.FXF_WRITE,
    os.O_RDWR: filetransfer.FXF_READ | filetransfer.FXF_WRITE,
}

_MODIFIERS = [
    (os.O_APPEND, filetransfer.FXF_APPEND),
    (os.O_CREAT, filetransfer.FXF_CREAT),
    (os.O_TRUNC, filetransfer.FXF_TRUNC),
    (os.O_EXCL, filetransfer.FXF_EXCL),
]


def sftpFlags(flags: int) -> int:
    """
    Translate C{os.O_*} flags into SFTP C{FXF_*} flags.
    """
    pflags = _ACCESS[flags & os.O_ACCMODE]
    for osFlag, fxf in _MODIFIERS:
        if flags & osFlag:
            pflags |= fxf
    return pflags


def _encode(path: str) -> bytes:
    return path.encode("utf-8", "surrogateescape")


def _decode(name) -> str:
    if isinstance(name, bytes):
        return name.decode("utf-8", "surrogateescape")
    return name


def _basename(path: str) -> str:
    return posixpath.basename(path.rstrip("/")) or "/"


@implementer(ISFTPClientFile)
class ConchSFTPClientFile:
    """
    A remote handle opened through L{ConchSFTPClient}.
    """

    def __init__(self, handle: filetransfer.ClientFile, path: str) -> None:
        self._handle = handle
        self._path = path

    def readChunk(self, offset: int, length: int) -> defer.Deferred:
        return self._handle.readChunk(offset, length)

    def writeChunk(self, offset: int, data: bytes) -> defer.Deferred:
        d = self._handle.writeChunk(offset, data)
        d.addCallback(lambda ignored: len(data))
        return d

    def stat(self) -> defer.Deferred:
        d = self._handle.getAttrs()
        d.addCallback(lambda attrs: FileInfo.fromAttrs(_basename(self._path), attrs))
        return d

    def truncate(self, size: int) -> defer.Deferred:
        # ClientFile.setAttrs sends FSTAT instead of FSETSTAT.  The handle is
        # already length-prefixed.
        parent = self._handle.parent
        data = self._handle.handle + parent._packAttributes({"size": size})
        return parent._sendRequest(filetransfer.FXP_FSETSTAT, data)

    def close(self) -> defer.Deferred:
        return self._handle.close()


@implementer(ISymlinkClient)
class ConchSFTPClient:
    """
    Adapt a connected L{filetransfer.FileTransferClient}.

    @ivar sftp: the wire client.
    @ivar _closer: called by L{close}; tears down the channel and the SSH
        connection and returns a L{defer.Deferred} that fires once they are
        gone.
    """

    def __init__(
        self,
        sftp: filetransfer.FileTransferClient,
        closer: Callable[[], defer.Deferred],
    ) -> None:
        self.sftp = sftp
        self._closer = closer

    def openFile(self, path: str, flags: int) -> defer.Deferred:
        d = self.sftp.openFile(_encode(path), sftpFlags(flags), {})
        d.addCallback(ConchSFTPClientFile, path)
        return d

    def mkdir(self, path: str) -> defer.Deferred:
        return self.sftp.makeDirectory(_encode(path), {})

    def remove(self, path: str) -> defer.Deferred:
        """
        Remove a file, falling back to RMDIR when the server refuses REMOVE
        with a generic failure, as servers do for directories.
        """

        def maybeDirectory(reason):
            reason.trap(filetransfer.SFTPError)
            if reason.value.code not in (
                filetransfer.FX_FAILURE,
                filetransfer.FX_PERMISSION_DENIED,
            ):
                return reason
            d = self.sftp.removeDirectory(_encode(path))
            d.addErrback(lambda ignored: reason)
            return d

        d = self.sftp.removeFile(_encode(path))
        d.addErrback(maybeDirectory)
        return d

    def rename(self, oldpath: str, newpath: str) -> defer.Deferred:
        return self.sftp.renameFile(_encode(oldpath), _encode(newpath))

    def _stat(self, path: str, followLinks: int) -> defer.Deferred:
        d = self.sftp.getAttrs(_encode(path), followLinks)
        d.addCallback(lambda attrs: FileInfo.fromAttrs(_basename(path), attrs))
        return d

    def stat(self, path: str) -> defer.Deferred:
        return self._stat(path, 1)

    def lstat(self, path: str) -> defer.Deferred:
        return self._stat(path, 0)

    def chmod(self, path: str, mode: int) -> defer.Deferred:
        return self.sftp.setAttrs(_encode(path), {"permissions": stat.S_IMODE(mode)})

    def chtimes(self, path: str, atime: float, mtime: float) -> defer.Deferred:
        return self.sftp.setAttrs(
            _encode(path), {"atime": int(atime), "mtime": int(mtime)}
        )

    def chown(self, path: str, uid: int, gid: int) -> defer.Deferred:
        return self.sftp.setAttrs(_encode(path), {"uid": uid, "gid": gid})

    def truncate(self, path: str, size: int) -> defer.Deferred:
        return self.sftp.setAttrs(_encode(path), {"size": size})

    @defer.inlineCallbacks
    def readDir(self, path: str) -> Any:
        directory = yield self.sftp.openDirectory(_encode(path))
        entries: List[FileInfo] = []
        try:
            while True:
                try:
                    batch = yield directory.read()
                except EOFError:
                    break
                for filename, longname, attrs in batch:
                    name = _decode(filename)
                    if name not in (".", ".."):
                        entries.append(FileInfo.fromAttrs(name, attrs))
        finally:
            yield directory.close()
        return entries

    def symlink(self, target: str, link: str) -> defer.Deferred:
        return self.sftp.makeLink(_encode(link), _encode(target))

    def readlink(self, link: str) -> defer.Deferred:
        d = self.sftp.readLink(_encode(link))
        d.addCallback(_decode)
        return d

    def close(self) -> defer.Deferred:
        _log.debug("Closing SFTP session")
        return self._closer()
