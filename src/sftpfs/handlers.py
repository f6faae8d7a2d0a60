# -*- test-case-name: sftpfs.test.test_handlers -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Serving an L{IFilesystem} to SFTP clients.

L{FilesystemHandler} sorts requests into four roles: reading, writing,
commands and listings.  L{SFTPServerForFilesystem} is the
L{ISFTPServer} that L{twisted.conch.ssh.filetransfer.FileTransferServer}
talks to; it turns each SFTP packet into a L{Request} for one of those
roles.
"""

from __future__ import annotations

import errno
import os
import posixpath
import stat
from collections import deque
from typing import Any, Deque, Dict, List, Tuple

import attr
from zope.interface import implementer

from twisted.conch.interfaces import ISFTPFile, ISFTPServer
from twisted.conch.ssh import filetransfer
from twisted.internet import defer
from twisted.logger import Logger

from sftpfs.error import UnsupportedOperation
from sftpfs.info import FileInfo, longName
from sftpfs.interfaces import ISymlinkFilesystem

_log = Logger()

_CODE_BY_ERRNO = {
    errno.ENOENT: filetransfer.FX_NO_SUCH_FILE,
    errno.EACCES: filetransfer.FX_PERMISSION_DENIED,
    errno.EPERM: filetransfer.FX_PERMISSION_DENIED,
    errno.EEXIST: filetransfer.FX_FILE_ALREADY_EXISTS,
}

_WRITE_FLAGS = (
    filetransfer.FXF_WRITE
    | filetransfer.FXF_APPEND
    | filetransfer.FXF_CREAT
    | filetransfer.FXF_TRUNC
)


@attr.s(auto_attribs=True)
class Request:
    """
    One decoded SFTP request.

    @ivar method: what to do, for example C{"Setstat"} or C{"List"}.
    @ivar filepath: the path the request is about.
    @ivar target: the second path of C{Rename} and C{Symlink}; for
        C{Symlink}, C{filepath} is the link and C{target} what it points at.
    @ivar pflags: C{FXF_*} flags of an open.
    @ivar attrs: the SFTP attribute dict sent with the request.
    """

    method: str
    filepath: str
    target: str = ""
    pflags: int = 0
    attrs: Dict[str, Any] = attr.Factory(dict)


class ReadWriteLock:
    """
    A L{defer.Deferred} based lock with shared and exclusive holders.

    Waiters are served in arrival order: a shared request queued behind an
    exclusive one waits for it, so writers are not starved.
    """

    def __init__(self) -> None:
        self.readers = 0
        self.writing = False
        self._waiting: Deque[Tuple[bool, defer.Deferred]] = deque()

    def _acquire(self, exclusive: bool) -> defer.Deferred:
        d = defer.Deferred(canceller=self._cancelAcquire)
        self._waiting.append((exclusive, d))
        self._wake()
        return d

    def _cancelAcquire(self, d: defer.Deferred) -> None:
        for entry in self._waiting:
            if entry[1] is d:
                self._waiting.remove(entry)
                return

    def acquireShared(self) -> defer.Deferred:
        return self._acquire(False)

    def acquireExclusive(self) -> defer.Deferred:
        return self._acquire(True)

    def releaseShared(self) -> None:
        assert self.readers > 0, "Tried to release an unheld shared lock"
        self.readers -= 1
        self._wake()

    def releaseExclusive(self) -> None:
        assert self.writing, "Tried to release an unheld exclusive lock"
        self.writing = False
        self._wake()

    def _wake(self) -> None:
        while self._waiting and not self.writing:
            exclusive, d = self._waiting[0]
            if exclusive:
                if self.readers:
                    return
                self._waiting.popleft()
                self.writing = True
            else:
                self._waiting.popleft()
                self.readers += 1
            d.callback(self)

    def _run(self, exclusive, f, *args, **kwargs) -> defer.Deferred:
        release = self.releaseExclusive if exclusive else self.releaseShared

        def execute(ignoredResult):
            d = defer.maybeDeferred(f, *args, **kwargs)

            def releaseAndReturn(result):
                release()
                return result

            d.addBoth(releaseAndReturn)
            return d

        d = self._acquire(exclusive)
        d.addCallback(execute)
        return d

    def runShared(self, f, *args, **kwargs) -> defer.Deferred:
        """
        Call C{f} while holding the lock shared.
        """
        return self._run(False, f, *args, **kwargs)

    def runExclusive(self, f, *args, **kwargs) -> defer.Deferred:
        """
        Call C{f} while holding the lock exclusively.
        """
        return self._run(True, f, *args, **kwargs)


def writeFlags(pflags: int) -> int:
    """
    Choose C{os.O_*} flags for an SFTP open that asked to write.  The file
    is always created if missing.
    """
    if pflags & filetransfer.FXF_READ and pflags & filetransfer.FXF_WRITE:
        flags = os.O_RDWR
    else:
        flags = os.O_WRONLY
    flags |= os.O_CREAT
    if pflags & filetransfer.FXF_APPEND:
        flags |= os.O_APPEND
    if pflags & filetransfer.FXF_TRUNC:
        flags |= os.O_TRUNC
    if pflags & filetransfer.FXF_EXCL:
        flags |= os.O_EXCL
    return flags


def _toSFTPError(reason):
    """
    Turn an L{OSError} from the backing filesystem into an
    L{filetransfer.SFTPError} with the closest status code.
    """
    reason.trap(OSError)
    code = reason.value.errno
    if code is None:
        return reason
    message = reason.value.strerror or os.strerror(code)
    raise filetransfer.SFTPError(
        _CODE_BY_ERRNO.get(code, filetransfer.FX_FAILURE), message
    )


def _statusErrors(d: defer.Deferred) -> defer.Deferred:
    return d.addErrback(_toSFTPError)


@implementer(ISFTPFile)
class ServerFile:
    """
    An open backing file served positionally.

    The backing handle only has a single position, so every C{readChunk} and
    C{writeChunk} seeks first and then reads or writes, holding a
    L{defer.DeferredLock} so concurrent requests on this handle do not
    interleave.
    """

    def __init__(self, handler, path, backing, readable, writable) -> None:
        self._handler = handler
        self.path = path
        self._backing = backing
        self._readable = readable
        self._writable = writable
        self._lock = defer.DeferredLock()

    def readChunk(self, offset, length):
        if not self._readable:
            return defer.fail(
                filetransfer.SFTPError(
                    filetransfer.FX_PERMISSION_DENIED, "file not open for reading"
                )
            )
        return _statusErrors(self._lock.run(self._readAt, offset, length))

    @defer.inlineCallbacks
    def _readAt(self, offset, length):
        yield defer.maybeDeferred(self._backing.seek, offset, os.SEEK_SET)
        data = yield defer.maybeDeferred(self._backing.read, length)
        return data

    def writeChunk(self, offset, data):
        if not self._writable:
            return defer.fail(
                filetransfer.SFTPError(
                    filetransfer.FX_PERMISSION_DENIED, "file not open for writing"
                )
            )
        return _statusErrors(self._lock.run(self._writeAt, offset, data))

    @defer.inlineCallbacks
    def _writeAt(self, offset, data):
        yield defer.maybeDeferred(self._backing.seek, offset, os.SEEK_SET)
        written = yield defer.maybeDeferred(self._backing.write, data)
        return written

    def getAttrs(self):
        d = defer.maybeDeferred(self._backing.stat)
        d.addCallback(lambda info: info.toAttrs())
        return _statusErrors(d)

    def setAttrs(self, attrs):
        return _statusErrors(
            self._handler.fileCmd(Request("Setstat", self.path, attrs=attrs))
        )

    def close(self):
        return _statusErrors(defer.maybeDeferred(self._backing.close))


class ListerAt:
    """
    A fixed listing served by offset.
    """

    def __init__(self, entries: List[FileInfo]) -> None:
        self.entries = list(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def listAt(self, offset: int, count: int) -> Tuple[List[FileInfo], bool]:
        """
        @return: up to C{count} entries starting at C{offset}, and whether the
            end of the listing was reached, which is the case when fewer than
            C{count} entries came back.
        """
        if offset >= len(self.entries):
            return [], True
        batch = self.entries[offset : offset + count]
        return batch, len(batch) < count


def _byName(info: FileInfo) -> bytes:
    return info.name.encode("utf-8", "surrogateescape")


class FilesystemHandler:
    """
    Serve one L{IFilesystem} to every session of a server.

    Opens for reading and listings hold L{lock} shared; opens for writing
    and commands hold it exclusively, so a mutation is never reordered with
    the reads around it.

    @ivar filesystem: the backing filesystem.
    @ivar lock: a L{ReadWriteLock}.
    """

    def __init__(self, filesystem) -> None:
        self.filesystem = filesystem
        self.lock = ReadWriteLock()

    def fileRead(self, request: Request) -> defer.Deferred:
        """
        Open C{request.filepath} for reading.

        @return: a L{defer.Deferred} firing with a L{ServerFile}.
        """
        return self.lock.runShared(self._openFile, request, os.O_RDONLY)

    def fileWrite(self, request: Request) -> defer.Deferred:
        """
        Open C{request.filepath} for writing; see L{writeFlags}.  New files get
        mode 0644.

        @return: a L{defer.Deferred} firing with a L{ServerFile}.
        """
        return self.lock.runExclusive(
            self._openFile, request, writeFlags(request.pflags)
        )

    @defer.inlineCallbacks
    def _openFile(self, request, flags):
        backing = yield defer.maybeDeferred(
            self.filesystem.openFile, request.filepath, flags, 0o644
        )
        access = flags & os.O_ACCMODE
        return ServerFile(
            self,
            request.filepath,
            backing,
            readable=access in (os.O_RDONLY, os.O_RDWR),
            writable=access in (os.O_WRONLY, os.O_RDWR),
        )

    def fileCmd(self, request: Request) -> defer.Deferred:
        """
        Run a command that changes the filesystem.
        """
        return self.lock.runExclusive(self._dispatch, "command", request)

    def fileList(self, request: Request) -> defer.Deferred:
        """
        Run a request that lists or describes paths.

        @return: a L{defer.Deferred} firing with a L{ListerAt}.
        """
        return self.lock.runShared(self._dispatch, "list", request)

    def _dispatch(self, prefix, request):
        f = getattr(self, f"{prefix}_{request.method}", None)
        if f is None:
            _log.info(
                "Unsupported {method} request for {path}",
                method=request.method,
                path=request.filepath,
            )
            raise UnsupportedOperation(request.method)
        return f(request)

    def _symlinkFilesystem(self, method):
        if not ISymlinkFilesystem.providedBy(self.filesystem):
            raise UnsupportedOperation(method)
        return self.filesystem

    @defer.inlineCallbacks
    def command_Setstat(self, request):
        fs, path, attrs = self.filesystem, request.filepath, request.attrs
        if "size" in attrs:
            yield defer.maybeDeferred(fs.truncate, path, attrs["size"])
        if "permissions" in attrs:
            yield defer.maybeDeferred(
                fs.chmod, path, stat.S_IMODE(attrs["permissions"])
            )
        atime, mtime = attrs.get("atime", 0), attrs.get("mtime", 0)
        if atime or mtime:
            yield defer.maybeDeferred(fs.chtimes, path, atime or mtime, mtime or atime)
        if "uid" in attrs and "gid" in attrs:
            yield defer.maybeDeferred(fs.chown, path, attrs["uid"], attrs["gid"])

    def command_Rename(self, request):
        return self.filesystem.rename(request.filepath, request.target)

    def command_Mkdir(self, request):
        return self.filesystem.mkdir(request.filepath, 0o755)

    def command_Remove(self, request):
        return self.filesystem.remove(request.filepath)

    command_Rmdir = command_Remove

    def command_Symlink(self, request):
        fs = self._symlinkFilesystem("Symlink")
        return fs.symlink(request.target, request.filepath)

    def command_Link(self, request):
        raise UnsupportedOperation("hard links are not supported")

    @defer.inlineCallbacks
    def list_List(self, request):
        directory = yield defer.maybeDeferred(
            self.filesystem.openFile, request.filepath, os.O_RDONLY, 0
        )
        try:
            entries = yield defer.maybeDeferred(directory.readDir, 0)
        finally:
            yield defer.maybeDeferred(directory.close)
        return ListerAt(sorted(entries, key=_byName))

    @defer.inlineCallbacks
    def list_Stat(self, request):
        info = yield defer.maybeDeferred(self.filesystem.stat, request.filepath)
        return ListerAt([info])

    @defer.inlineCallbacks
    def list_Lstat(self, request):
        if ISymlinkFilesystem.providedBy(self.filesystem):
            lstat = self.filesystem.lstat
        else:
            lstat = self.filesystem.stat
        info = yield defer.maybeDeferred(lstat, request.filepath)
        return ListerAt([info])

    @defer.inlineCallbacks
    def list_Readlink(self, request):
        """
        Read a link; the single entry returned is named after the full
        target path.
        """
        fs = self._symlinkFilesystem("Readlink")
        target = yield defer.maybeDeferred(fs.readlink, request.filepath)
        return ListerAt(
            [FileInfo(name=target, size=len(target), mode=stat.S_IFLNK | 0o777)]
        )


def _decode(path) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", "surrogateescape")
    return path


def _encode(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape")


class _DirectoryListing:
    """
    The iterator L{filetransfer.FileTransferServer} pulls READDIR replies
    from, fed from a L{ListerAt} in batches.
    """

    batchSize = 100

    def __init__(self, lister: ListerAt) -> None:
        self._lister = lister
        self._offset = 0
        self._pending: Deque[FileInfo] = deque()
        self._atEnd = False

    def __iter__(self):
        return self

    def __next__(self):
        if not self._pending:
            if self._atEnd:
                raise StopIteration()
            entries, self._atEnd = self._lister.listAt(self._offset, self.batchSize)
            self._offset += len(entries)
            self._pending.extend(entries)
            if not entries:
                raise StopIteration()
        info = self._pending.popleft()
        return _encode(info.name), _encode(longName(info)), info.toAttrs()

    def close(self):
        self._pending.clear()
        self._atEnd = True


@implementer(ISFTPServer)
class SFTPServerForFilesystem:
    """
    Adapt an avatar that has a C{handler} L{FilesystemHandler} to
    L{ISFTPServer}.
    """

    def __init__(self, avatar) -> None:
        self.avatar = avatar
        self.handler = avatar.handler

    def gotVersion(self, otherVersion, extData):
        return {}

    def openFile(self, filename, flags, attrs):
        path = _decode(filename)
        if flags & _WRITE_FLAGS:
            d = self.handler.fileWrite(Request("Put", path, pflags=flags, attrs=attrs))
        else:
            d = self.handler.fileRead(Request("Get", path, pflags=flags))
        return _statusErrors(d)

    def _command(self, method, path, **kwargs):
        request = Request(method, _decode(path), **kwargs)
        return _statusErrors(self.handler.fileCmd(request))

    def _list(self, method, path):
        return _statusErrors(self.handler.fileList(Request(method, _decode(path))))

    def removeFile(self, filename):
        return self._command("Remove", filename)

    def renameFile(self, oldpath, newpath):
        return self._command("Rename", oldpath, target=_decode(newpath))

    def makeDirectory(self, path, attrs):
        return self._command("Mkdir", path, attrs=attrs)

    def removeDirectory(self, path):
        return self._command("Rmdir", path)

    def openDirectory(self, path):
        return self._list("List", path).addCallback(_DirectoryListing)

    def getAttrs(self, path, followLinks):
        d = self._list("Stat" if followLinks else "Lstat", path)
        d.addCallback(lambda lister: lister.entries[0].toAttrs())
        return d

    def setAttrs(self, path, attrs):
        return self._command("Setstat", path, attrs=attrs)

    def readLink(self, path):
        d = self._list("Readlink", path)
        d.addCallback(lambda lister: _encode(lister.entries[0].name))
        return d

    def makeLink(self, linkPath, targetPath):
        return self._command("Symlink", linkPath, target=_decode(targetPath))

    def realPath(self, path):
        return _encode(posixpath.normpath(posixpath.join("/", _decode(path))))

    def extendedRequest(self, extendedName, extendedData):
        raise NotImplementedError()
