# -*- test-case-name: sftpfs.test.test_file -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
File handles on a remote SFTP server.
"""

from __future__ import annotations

import errno
import os
from typing import Any, List, Optional

from zope.interface import implementer

from twisted.internet import defer
from twisted.python.failure import Failure

from sftpfs._cursor import DirectoryCursor
from sftpfs.error import errorContext, fsError, wrapError
from sftpfs.interfaces import IFile, ISFTPClientFile

# Most servers cap a single READ or WRITE near this size.
CHUNK_SIZE = 32768


@implementer(IFile)
class SFTPFile:
    """
    A handle returned by L{sftpfs.filesystem.SFTPFilesystem.openFile}.

    SFTP reads and writes are positional, so the sequential position lives
    here: L{read}, L{write} and L{seek} move it and are serialized by a
    L{defer.DeferredLock}.  L{readAt} and L{writeAt} leave it alone.

    Every method returns a L{defer.Deferred}.  A handle is meant to be used
    by one caller at a time.

    @ivar _offset: the sequential position.
    @ivar _cursor: directory iteration state, filled on the first
        L{readDir}.
    """

    def __init__(
        self,
        filesystem,
        handle: ISFTPClientFile,
        path: str,
        offset: int = 0,
    ) -> None:
        self._filesystem = filesystem
        self._handle = handle
        self._path = path
        self._offset = offset
        self._lock = defer.DeferredLock()
        self._cursor = DirectoryCursor()
        self._closeWaiters: Optional[List[defer.Deferred]] = None
        self._closeOutcome: Any = None
        self._closeDone = False

    def _check(self) -> None:
        if self._closeWaiters is not None:
            raise fsError(errno.EBADF, self._path, "file already closed")

    def name(self) -> str:
        return self._path

    def read(self, size: int = -1) -> defer.Deferred:
        return self._lock.run(self._read, size)

    @defer.inlineCallbacks
    def _read(self, size):
        data = yield self._readAt(self._offset, size)
        self._offset += len(data)
        return data

    def readAt(self, offset: int, length: int) -> defer.Deferred:
        return self._readAt(offset, length)

    @defer.inlineCallbacks
    def _readAt(self, offset, length):
        """
        Read in chunks until C{length} bytes arrive or the server reports end
        of file.  A negative C{length} reads to end of file.
        """
        self._check()
        if offset < 0:
            raise fsError(errno.EINVAL, self._path)
        chunks = []
        remaining = length
        with errorContext("Read", self._path):
            while remaining != 0:
                want = CHUNK_SIZE if remaining < 0 else min(remaining, CHUNK_SIZE)
                try:
                    chunk = yield self._handle.readChunk(offset, want)
                except EOFError:
                    break
                if not chunk:
                    break
                chunks.append(chunk)
                offset += len(chunk)
                if remaining > 0:
                    remaining -= len(chunk)
        return b"".join(chunks)

    def write(self, data: bytes) -> defer.Deferred:
        return self._lock.run(self._write, data)

    @defer.inlineCallbacks
    def _write(self, data):
        written = yield self._writeAt(self._offset, data)
        self._offset += written
        return written

    def writeAt(self, offset: int, data: bytes) -> defer.Deferred:
        return self._writeAt(offset, data)

    @defer.inlineCallbacks
    def _writeAt(self, offset, data):
        self._check()
        if offset < 0:
            raise fsError(errno.EINVAL, self._path)
        view = memoryview(data)
        with errorContext("Write", self._path):
            for start in range(0, len(view), CHUNK_SIZE):
                chunk = bytes(view[start : start + CHUNK_SIZE])
                yield self._handle.writeChunk(offset + start, chunk)
        return len(data)

    def writeString(self, s: str) -> defer.Deferred:
        return self.write(s.encode("utf-8"))

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> defer.Deferred:
        """
        Move the sequential position.  Nothing is sent to the server except
        a stat for C{os.SEEK_END}.
        """
        return self._lock.run(self._seek, offset, whence)

    @defer.inlineCallbacks
    def _seek(self, offset, whence):
        self._check()
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._offset + offset
        elif whence == os.SEEK_END:
            info = yield self.stat()
            position = info.size + offset
        else:
            raise fsError(errno.EINVAL, self._path, "invalid whence")
        if position < 0:
            raise fsError(errno.EINVAL, self._path, "negative position")
        self._offset = position
        return position

    def close(self) -> defer.Deferred:
        """
        Close the remote handle.  Later calls fire with the outcome of the
        first one.
        """
        if self._closeWaiters is None:
            self._closeWaiters = []
            d = defer.maybeDeferred(self._handle.close)
            d.addErrback(self._wrapClose)
            d.addBoth(self._closed)
        waiter = defer.Deferred()
        if self._closeDone:
            self._fire(waiter)
        else:
            self._closeWaiters.append(waiter)
        return waiter

    def _wrapClose(self, reason: Failure) -> Failure:
        wrapped = wrapError("Close", self._path, reason.value)
        if wrapped is reason.value:
            return reason
        wrapped.__cause__ = reason.value
        return Failure(wrapped)

    def _closed(self, outcome) -> None:
        self._closeOutcome = outcome
        self._closeDone = True
        waiters, self._closeWaiters = self._closeWaiters, []
        for waiter in waiters:
            self._fire(waiter)

    def _fire(self, waiter: defer.Deferred) -> None:
        if isinstance(self._closeOutcome, Failure):
            waiter.errback(self._closeOutcome)
        else:
            waiter.callback(None)

    @defer.inlineCallbacks
    def stat(self):
        """
        Stat the open handle, or the path when the server cannot stat
        handles.
        """
        self._check()
        try:
            with errorContext("Stat", self._path):
                info = yield self._handle.stat()
        except NotImplementedError:
            info = yield self._filesystem.stat(self._path)
        return info

    def sync(self) -> defer.Deferred:
        """
        Do nothing: SFTP version 3 has no fsync request.
        """
        return defer.maybeDeferred(self._check)

    @defer.inlineCallbacks
    def truncate(self, size: int):
        self._check()
        if size < 0:
            raise fsError(errno.EINVAL, self._path)
        with errorContext("Truncate", self._path):
            yield self._handle.truncate(size)

    @defer.inlineCallbacks
    def readDir(self, n: int = 0):
        self._check()
        if not self._cursor.loaded:
            with errorContext("Readdir", self._path):
                entries = yield self._filesystem.client.readDir(self._path)
            self._cursor.load(entries)
        return self._cursor.next(n)

    def readDirNames(self, n: int = 0) -> defer.Deferred:
        d = self.readDir(n)
        d.addCallback(lambda infos: [info.name for info in infos])
        return d

