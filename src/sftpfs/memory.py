# -*- test-case-name: sftpfs.test.test_memory -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
An in-memory filesystem, for serving scratch trees and for tests.

All operations complete synchronously.  Instances are not thread-safe; use
them from the reactor thread.
"""

from __future__ import annotations

import errno
import os
import posixpath
import stat
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

from zope.interface import implementer

from sftpfs._cursor import DirectoryCursor
from sftpfs.error import fsError
from sftpfs.info import FileInfo
from sftpfs.interfaces import IFile, ISymlinkFilesystem

# Same limit as Linux's MAXSYMLINKS.
_MAX_SYMLINKS = 40


class _Node:
    kind = 0

    def __init__(self, mode: int, now: float) -> None:
        self.mode = stat.S_IMODE(mode)
        self.atime = self.mtime = now
        self.uid = self.gid = 0


class _File(_Node):
    kind = stat.S_IFREG

    def __init__(self, mode: int, now: float) -> None:
        _Node.__init__(self, mode, now)
        self.data = bytearray()


class _Directory(_Node):
    kind = stat.S_IFDIR

    def __init__(self, mode: int, now: float) -> None:
        _Node.__init__(self, mode, now)
        self.children: Dict[str, _Node] = {}


class _Link(_Node):
    kind = stat.S_IFLNK

    def __init__(self, target: str, now: float) -> None:
        _Node.__init__(self, 0o777, now)
        self.target = target


_Location = Tuple[Optional[_Directory], str, Optional[_Node]]


def _parts(path: str) -> List[str]:
    normalized = posixpath.normpath("/" + path)
    return [part for part in normalized.split("/") if part]


@implementer(ISymlinkFilesystem)
class MemoryFilesystem:
    """
    A tree of files, directories and symbolic links held in memory.

    @ivar _now: returns the current time, used to stamp modifications.
    """

    def __init__(self, now: Callable[[], float] = time.time) -> None:
        self._now = now
        self._root = _Directory(0o755, now())

    def _locate(self, path: str, follow: bool = True, depth: int = 0) -> _Location:
        """
        Find the entry for C{path}.

        Links in every component but the last are always followed; the last
        is followed when C{follow} is true.

        @return: the parent directory (L{None} for the root), the final name
            and the node, or L{None} if the final name does not exist.
        """
        parts = _parts(path)
        if not parts:
            return None, "/", self._root
        directory, prefix = self._root, "/"
        for index, part in enumerate(parts):
            last = index == len(parts) - 1
            node = directory.children.get(part)
            if isinstance(node, _Link) and (follow or not last):
                if depth >= _MAX_SYMLINKS:
                    raise fsError(errno.ELOOP, path)
                target = posixpath.join(prefix, node.target, *parts[index + 1 :])
                return self._locate(target, follow, depth + 1)
            if last:
                return directory, part, node
            if node is None:
                raise fsError(errno.ENOENT, path)
            if not isinstance(node, _Directory):
                raise fsError(errno.ENOTDIR, path)
            directory, prefix = node, posixpath.join(prefix, part)
        raise AssertionError("unreachable")

    def _existing(self, path: str, follow: bool = True) -> _Node:
        _, _, node = self._locate(path, follow)
        if node is None:
            raise fsError(errno.ENOENT, path)
        return node

    def _info(self, path: str, node: _Node) -> FileInfo:
        if isinstance(node, _File):
            size = len(node.data)
        elif isinstance(node, _Link):
            size = len(node.target)
        else:
            size = 0
        return FileInfo(
            name=posixpath.basename(posixpath.normpath("/" + path)) or "/",
            size=size,
            mode=node.kind | node.mode,
            mtime=node.mtime,
            sys={"uid": node.uid, "gid": node.gid, "atime": int(node.atime)},
        )

    def openFile(self, path: str, flags: int, mode: int) -> "MemoryFile":
        create = flags & os.O_CREAT
        if create and flags & os.O_EXCL:
            if self._locate(path, follow=False)[2] is not None:
                raise fsError(errno.EEXIST, path)
        parent, name, node = self._locate(path)
        writable = flags & os.O_ACCMODE != os.O_RDONLY
        if node is None:
            if not create:
                raise fsError(errno.ENOENT, path)
            node = _File(mode, self._now())
            parent.children[name] = node
        elif isinstance(node, _Directory):
            if writable:
                raise fsError(errno.EISDIR, path)
        elif writable and flags & os.O_TRUNC:
            del node.data[:]
            node.mtime = self._now()
        return MemoryFile(self, path, node, flags)

    def open(self, path: str) -> "MemoryFile":
        return self.openFile(path, os.O_RDONLY, 0)

    def create(self, path: str) -> "MemoryFile":
        return self.openFile(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o666)

    def mkdir(self, path: str, mode: int) -> None:
        parent, name, node = self._locate(path, follow=False)
        if node is not None:
            raise fsError(errno.EEXIST, path)
        parent.children[name] = _Directory(mode, self._now())

    def mkdirAll(self, path: str, mode: int) -> None:
        current = "/"
        for part in _parts(path):
            current = posixpath.join(current, part)
            _, _, node = self._locate(current)
            if node is None:
                self.mkdir(current, mode)
            elif not isinstance(node, _Directory):
                raise fsError(errno.ENOTDIR, current)

    def remove(self, path: str) -> None:
        parent, name, node = self._locate(path, follow=False)
        if node is None:
            raise fsError(errno.ENOENT, path)
        if parent is None:
            raise fsError(errno.EBUSY, path)
        if isinstance(node, _Directory) and node.children:
            raise fsError(errno.ENOTEMPTY, path)
        del parent.children[name]

    def removeAll(self, path: str) -> None:
        try:
            parent, name, node = self._locate(path, follow=False)
        except FileNotFoundError:
            return
        if node is None:
            return
        if parent is None:
            self._root.children.clear()
            return
        del parent.children[name]

    def rename(self, oldpath: str, newpath: str) -> None:
        oldParent, oldName, node = self._locate(oldpath, follow=False)
        if node is None:
            raise fsError(errno.ENOENT, oldpath)
        newParent, newName, existing = self._locate(newpath, follow=False)
        if oldParent is None or newParent is None:
            raise fsError(errno.EBUSY, oldpath)
        if existing is node:
            return
        if isinstance(node, _Directory):
            oldParts, newParts = _parts(oldpath), _parts(newpath)
            if newParts[: len(oldParts)] == oldParts:
                raise fsError(errno.EINVAL, newpath)
            if existing is not None:
                if not isinstance(existing, _Directory):
                    raise fsError(errno.ENOTDIR, newpath)
                if existing.children:
                    raise fsError(errno.ENOTEMPTY, newpath)
        elif isinstance(existing, _Directory):
            raise fsError(errno.EISDIR, newpath)
        del oldParent.children[oldName]
        newParent.children[newName] = node

    def stat(self, path: str) -> FileInfo:
        return self._info(path, self._existing(path))

    def lstat(self, path: str) -> FileInfo:
        return self._info(path, self._existing(path, follow=False))

    def chmod(self, path: str, mode: int) -> None:
        self._existing(path).mode = stat.S_IMODE(mode)

    def chtimes(self, path: str, atime: float, mtime: float) -> None:
        node = self._existing(path)
        node.atime, node.mtime = atime, mtime

    def chown(self, path: str, uid: int, gid: int) -> None:
        node = self._existing(path)
        node.uid, node.gid = uid, gid

    def truncate(self, path: str, size: int) -> None:
        node = self._existing(path)
        if isinstance(node, _Directory):
            raise fsError(errno.EISDIR, path)
        if size < 0:
            raise fsError(errno.EINVAL, path)
        _resize(node, size)
        node.mtime = self._now()

    def readDir(self, path: str) -> List[FileInfo]:
        node = self._existing(path)
        if not isinstance(node, _Directory):
            raise fsError(errno.ENOTDIR, path)
        return self._listing(path, node)

    def _listing(self, path: str, node: _Directory) -> List[FileInfo]:
        return [
            self._info(posixpath.join(path, name), child)
            for name, child in sorted(node.children.items())
        ]

    def symlink(self, target: str, link: str) -> None:
        parent, name, node = self._locate(link, follow=False)
        if node is not None:
            raise fsError(errno.EEXIST, link)
        parent.children[name] = _Link(target, self._now())

    def readlink(self, link: str) -> str:
        node = self._existing(link, follow=False)
        if not isinstance(node, _Link):
            raise fsError(errno.EINVAL, link)
        return node.target


def _resize(node: _File, size: int) -> None:
    if size < len(node.data):
        del node.data[size:]
    else:
        node.data.extend(b"\0" * (size - len(node.data)))


@implementer(IFile)
class MemoryFile:
    """
    An open handle on a L{MemoryFilesystem} node.
    """

    def __init__(
        self,
        filesystem: MemoryFilesystem,
        path: str,
        node: Union[_File, _Directory],
        flags: int,
    ) -> None:
        self._filesystem = filesystem
        self._path = path
        self._node = node
        access = flags & os.O_ACCMODE
        self._readable = access in (os.O_RDONLY, os.O_RDWR)
        self._writable = access in (os.O_WRONLY, os.O_RDWR)
        self._append = bool(flags & os.O_APPEND)
        self._position = 0
        self._closed = False
        self._cursor = DirectoryCursor()

    def _check(self, reading: bool = False, writing: bool = False) -> _File:
        if self._closed:
            raise fsError(errno.EBADF, self._path, "file already closed")
        if isinstance(self._node, _Directory):
            if writing or reading:
                raise fsError(errno.EISDIR, self._path)
        elif (reading and not self._readable) or (writing and not self._writable):
            raise fsError(errno.EBADF, self._path)
        return self._node

    def name(self) -> str:
        return self._path

    def read(self, size: int = -1) -> bytes:
        data = self.readAt(self._position, size)
        self._position += len(data)
        return data

    def readAt(self, offset: int, length: int) -> bytes:
        node = self._check(reading=True)
        if offset < 0:
            raise fsError(errno.EINVAL, self._path)
        end = len(node.data) if length < 0 else offset + length
        return bytes(node.data[offset:end])

    def write(self, data: bytes) -> int:
        if self._append:
            self._position = len(self._check(writing=True).data)
        written = self.writeAt(self._position, data)
        self._position += written
        return written

    def writeAt(self, offset: int, data: bytes) -> int:
        node = self._check(writing=True)
        if offset < 0:
            raise fsError(errno.EINVAL, self._path)
        if self._append:
            offset = len(node.data)
        if offset > len(node.data):
            _resize(node, offset)
        node.data[offset : offset + len(data)] = data
        node.mtime = self._filesystem._now()
        return len(data)

    def writeString(self, s: str) -> int:
        return self.write(s.encode("utf-8"))

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        self._check()
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._position + offset
        elif whence == os.SEEK_END:
            size = len(self._node.data) if isinstance(self._node, _File) else 0
            position = size + offset
        else:
            raise fsError(errno.EINVAL, self._path)
        if position < 0:
            raise fsError(errno.EINVAL, self._path)
        self._position = position
        return position

    def close(self) -> None:
        self._closed = True

    def stat(self) -> FileInfo:
        self._check()
        return self._filesystem._info(self._path, self._node)

    def sync(self) -> None:
        self._check()

    def truncate(self, size: int) -> None:
        node = self._check(writing=True)
        if size < 0:
            raise fsError(errno.EINVAL, self._path)
        _resize(node, size)
        node.mtime = self._filesystem._now()

    def readDir(self, n: int = 0) -> List[FileInfo]:
        self._check()
        if not isinstance(self._node, _Directory):
            raise fsError(errno.ENOTDIR, self._path)
        if not self._cursor.loaded:
            self._cursor.load(self._filesystem._listing(self._path, self._node))
        return self._cursor.next(n)

    def readDirNames(self, n: int = 0) -> List[str]:
        return [info.name for info in self.readDir(n)]
