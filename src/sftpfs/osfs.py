# -*- test-case-name: sftpfs.test.test_osfs -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
A filesystem backed by a directory on local disk.
"""

from __future__ import annotations

import errno
import os
import posixpath
import stat
from contextlib import contextmanager
from typing import Iterator, List, Optional

from zope.interface import implementer

from twisted.python.filepath import FilePath

from sftpfs._cursor import DirectoryCursor
from sftpfs.error import fsError
from sftpfs.info import FileInfo
from sftpfs.interfaces import IFile, ISymlinkFilesystem


@contextmanager
def _translated(path: str) -> Iterator[None]:
    """
    Re-raise L{OSError}s against C{path} instead of the on-disk name.
    """
    try:
        yield
    except OSError as e:
        if e.errno is None:
            raise
        raise fsError(e.errno, path, e.strerror) from e


def _info(name: str, st: os.stat_result) -> FileInfo:
    return FileInfo(
        name=name,
        size=st.st_size,
        mode=st.st_mode,
        mtime=st.st_mtime,
        sys={"uid": st.st_uid, "gid": st.st_gid, "atime": int(st.st_atime)},
    )


@implementer(ISymlinkFilesystem)
class OSFilesystem:
    """
    Serve the tree below C{root}.

    Paths are resolved lexically below the root, so C{..} cannot climb out
    of it.  Symbolic link targets are stored verbatim and are resolved by the
    operating system; a link pointing outside the root is followed.

    @ivar root: the directory everything is served from.
    @type root: L{FilePath}
    """

    def __init__(self, root) -> None:
        if not isinstance(root, FilePath):
            root = FilePath(root)
        self.root = root

    def _fp(self, path: str) -> FilePath:
        relative = posixpath.normpath("/" + path).lstrip("/")
        if not relative:
            return self.root
        return self.root.preauthChild(relative)

    def _name(self, path: str) -> str:
        return posixpath.basename(posixpath.normpath("/" + path)) or "/"

    def openFile(self, path: str, flags: int, mode: int) -> "OSFile":
        with _translated(path):
            fd = os.open(self._fp(path).path, flags | getattr(os, "O_BINARY", 0), mode)
        return OSFile(self, path, fd)

    def open(self, path: str) -> "OSFile":
        return self.openFile(path, os.O_RDONLY, 0)

    def create(self, path: str) -> "OSFile":
        return self.openFile(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o666)

    def mkdir(self, path: str, mode: int) -> None:
        with _translated(path):
            os.mkdir(self._fp(path).path, mode)

    def mkdirAll(self, path: str, mode: int) -> None:
        fp = self._fp(path)
        with _translated(path):
            if fp.isdir():
                return
            fp.makedirs(ignoreExistingDirectory=True)
            fp.chmod(mode)

    def remove(self, path: str) -> None:
        fp = self._fp(path)
        with _translated(path):
            if fp.isdir() and not fp.islink():
                os.rmdir(fp.path)
            else:
                os.remove(fp.path)

    def removeAll(self, path: str) -> None:
        fp = self._fp(path)
        with _translated(path):
            if not fp.exists() and not fp.islink():
                return
            fp.remove()

    def rename(self, oldpath: str, newpath: str) -> None:
        with _translated(oldpath):
            os.rename(self._fp(oldpath).path, self._fp(newpath).path)

    def stat(self, path: str) -> FileInfo:
        with _translated(path):
            return _info(self._name(path), os.stat(self._fp(path).path))

    def lstat(self, path: str) -> FileInfo:
        with _translated(path):
            return _info(self._name(path), os.lstat(self._fp(path).path))

    def chmod(self, path: str, mode: int) -> None:
        with _translated(path):
            os.chmod(self._fp(path).path, stat.S_IMODE(mode))

    def chtimes(self, path: str, atime: float, mtime: float) -> None:
        with _translated(path):
            os.utime(self._fp(path).path, (atime, mtime))

    def chown(self, path: str, uid: int, gid: int) -> None:
        with _translated(path):
            os.chown(self._fp(path).path, uid, gid)

    def truncate(self, path: str, size: int) -> None:
        with _translated(path):
            os.truncate(self._fp(path).path, size)

    def readDir(self, path: str) -> List[FileInfo]:
        directory = self._fp(path)
        with _translated(path):
            names = sorted(os.listdir(directory.path))
            return [
                _info(name, os.lstat(os.path.join(directory.path, name)))
                for name in names
            ]

    def symlink(self, target: str, link: str) -> None:
        with _translated(link):
            os.symlink(target, self._fp(link).path)

    def readlink(self, link: str) -> str:
        with _translated(link):
            return os.readlink(self._fp(link).path)


@implementer(IFile)
class OSFile:
    """
    An open file descriptor below an L{OSFilesystem}.
    """

    def __init__(self, filesystem: OSFilesystem, path: str, fd: int) -> None:
        self._filesystem = filesystem
        self._path = path
        self._fd: Optional[int] = fd
        self._cursor = DirectoryCursor()

    def _check(self) -> int:
        if self._fd is None:
            raise fsError(errno.EBADF, self._path, "file already closed")
        return self._fd

    def name(self) -> str:
        return self._path

    def read(self, size: int = -1) -> bytes:
        fd = self._check()
        with _translated(self._path):
            if size >= 0:
                return os.read(fd, size)
            chunks = []
            while True:
                chunk = os.read(fd, 65536)
                if not chunk:
                    return b"".join(chunks)
                chunks.append(chunk)

    def readAt(self, offset: int, length: int) -> bytes:
        fd = self._check()
        with _translated(self._path):
            if length < 0:
                length = max(os.fstat(fd).st_size - offset, 0)
            return os.pread(fd, length, offset)

    def write(self, data: bytes) -> int:
        fd = self._check()
        view = memoryview(data)
        with _translated(self._path):
            while view:
                view = view[os.write(fd, view) :]
        return len(data)

    def writeAt(self, offset: int, data: bytes) -> int:
        fd = self._check()
        view = memoryview(data)
        with _translated(self._path):
            while view:
                written = os.pwrite(fd, view, offset)
                view, offset = view[written:], offset + written
        return len(data)

    def writeString(self, s: str) -> int:
        return self.write(s.encode("utf-8"))

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        fd = self._check()
        with _translated(self._path):
            return os.lseek(fd, offset, whence)

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        with _translated(self._path):
            os.close(fd)

    def stat(self) -> FileInfo:
        fd = self._check()
        with _translated(self._path):
            return _info(self._filesystem._name(self._path), os.fstat(fd))

    def sync(self) -> None:
        fd = self._check()
        with _translated(self._path):
            os.fsync(fd)

    def truncate(self, size: int) -> None:
        fd = self._check()
        with _translated(self._path):
            os.ftruncate(fd, size)

    def readDir(self, n: int = 0) -> List[FileInfo]:
        fd = self._check()
        if not self._cursor.loaded:
            with _translated(self._path):
                if not stat.S_ISDIR(os.fstat(fd).st_mode):
                    raise fsError(errno.ENOTDIR, self._path)
            self._cursor.load(self._filesystem.readDir(self._path))
        return self._cursor.next(n)

    def readDirNames(self, n: int = 0) -> List[str]:
        return [info.name for info in self.readDir(n)]
