# -*- test-case-name: sftpfs.test.test_filesystem -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
A remote SFTP server presented as an L{IFilesystem}.
"""

from __future__ import annotations

import errno
import os
import stat
from typing import Optional

from zope.interface import alsoProvides, implementer

from twisted.internet import defer
from twisted.logger import Logger

from sftpfs import util
from sftpfs.error import UnsupportedOperation, errorContext, fsError
from sftpfs.file import SFTPFile
from sftpfs.interfaces import (
    IFilesystem,
    IMakeDirectories,
    ISFTPClient,
    ISymlinkClient,
    ISymlinkFilesystem,
)

_log = Logger()


@implementer(IFilesystem)
class SFTPFilesystem:
    """
    Translate filesystem calls into SFTP requests.

    Nothing is cached and nothing is retried.  Every method returns a
    L{defer.Deferred}; errors from the server are re-raised as L{OSError}s
    naming the operation and path, chained to the original.

    Instances also provide L{ISymlinkFilesystem} when C{client} provides
    L{ISymlinkClient}.

    @ivar client: the SFTP client everything is sent through.
    @type client: L{ISFTPClient}
    """

    separator = "/"
    listSeparator = ":"

    def __init__(self, client: ISFTPClient) -> None:
        self.client = client
        self._cwd = "/"
        self._closing: Optional[defer.Deferred] = None
        if ISymlinkClient.providedBy(client):
            alsoProvides(self, ISymlinkFilesystem)

    def _call(self, operation: str, path: str, f, *args, message=None):
        d = defer.maybeDeferred(f, *args)
        return _wrapped(d, operation, path, message)

    @defer.inlineCallbacks
    def openFile(self, path: str, flags: int, mode: int = 0o666):
        """
        Open C{path}.  When C{os.O_CREAT} is set the mode is applied with a
        follow-up chmod, since servers apply their own umask; if that fails
        the new handle is closed and the error raised.
        """
        with errorContext("OpenFile", path):
            handle = yield self.client.openFile(path, flags)
        f = SFTPFile(self, handle, path)
        try:
            if flags & os.O_CREAT:
                yield self.chmod(path, mode)
            if flags & os.O_APPEND:
                info = yield f.stat()
                f._offset = info.size
        except BaseException:
            yield f.close().addErrback(lambda reason: None)
            raise
        return f

    def open(self, path: str) -> defer.Deferred:
        return self.openFile(path, os.O_RDONLY, 0)

    def create(self, path: str) -> defer.Deferred:
        return self.openFile(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o666)

    @defer.inlineCallbacks
    def mkdir(self, path: str, mode: int = 0o777):
        """
        Create a directory.  SFTP servers may ignore the mode sent with
        MKDIR, so it is set again with chmod.
        """
        with errorContext("Mkdir", path):
            yield self.client.mkdir(path)
        yield self.chmod(path, mode)

    def mkdirAll(self, path: str, mode: int = 0o777) -> defer.Deferred:
        if IMakeDirectories.providedBy(self.client):
            return self._call("MkdirAll", path, self.client.mkdirAll, path)
        return util.mkdirAll(self, path, mode)

    def remove(self, path: str) -> defer.Deferred:
        return self._call("Remove", path, self.client.remove, path)

    def removeAll(self, path: str) -> defer.Deferred:
        return util.removeAll(self, path)

    def rename(self, oldpath: str, newpath: str) -> defer.Deferred:
        return self._call(
            "Rename",
            oldpath,
            self.client.rename,
            oldpath,
            newpath,
            message=f"{oldpath} -> {newpath}",
        )

    def stat(self, path: str) -> defer.Deferred:
        return self._call("Stat", path, self.client.stat, path)

    def lstat(self, path: str) -> defer.Deferred:
        return self._call("Lstat", path, self.client.lstat, path)

    def chmod(self, path: str, mode: int) -> defer.Deferred:
        return self._call("Chmod", path, self.client.chmod, path, mode)

    def chtimes(self, path: str, atime: float, mtime: float) -> defer.Deferred:
        return self._call("Chtimes", path, self.client.chtimes, path, atime, mtime)

    def chown(self, path: str, uid: int, gid: int) -> defer.Deferred:
        return self._call("Chown", path, self.client.chown, path, uid, gid)

    def lchown(self, path: str, uid: int, gid: int) -> defer.Deferred:
        """
        Same as L{chown}: SFTP version 3 has no SETSTAT variant that leaves
        links alone, so a final symbolic link is followed.
        """
        return self.chown(path, uid, gid)

    def truncate(self, path: str, size: int) -> defer.Deferred:
        return self._call("Truncate", path, self.client.truncate, path, size)

    def readDir(self, path: str) -> defer.Deferred:
        return self._call("Readdir", path, self.client.readDir, path)

    def symlink(self, target: str, link: str) -> defer.Deferred:
        if not ISymlinkClient.providedBy(self.client):
            return defer.fail(UnsupportedOperation("symlink"))
        return self._call(
            "Symlink",
            link,
            self.client.symlink,
            target,
            link,
            message=f"{target} -> {link}",
        )

    def readlink(self, link: str) -> defer.Deferred:
        if not ISymlinkClient.providedBy(self.client):
            return defer.fail(UnsupportedOperation("readlink"))
        return self._call("Readlink", link, self.client.readlink, link)

    @defer.inlineCallbacks
    def chdir(self, path: str):
        """
        Record C{path} as the working directory after checking it is a
        directory.  Paths sent to the server are never resolved against it.
        """
        info = yield self.stat(path)
        if not stat.S_ISDIR(info.mode):
            raise fsError(
                errno.ENOTDIR, path, f"sftpfs.Chdir({path}): not a directory"
            )
        self._cwd = path

    def getwd(self) -> str:
        return self._cwd

    def tempDir(self) -> str:
        return "/tmp"

    def close(self) -> defer.Deferred:
        """
        Close the SFTP session and the SSH connection.  Closing again fires
        once the first close is done.
        """
        if self._closing is None:
            _log.info("Closing connection")
            self._closing = defer.maybeDeferred(self.client.close)
            self._closing.addErrback(
                lambda reason: _log.failure("Error while closing", reason)
            )
        d = defer.Deferred()
        self._closing.addCallback(lambda ignored: d.callback(None))
        return d


def _wrapped(d: defer.Deferred, operation: str, path: str, message=None):
    def translate(reason):
        with errorContext(operation, path, message):
            reason.raiseException()

    return d.addErrback(translate)
