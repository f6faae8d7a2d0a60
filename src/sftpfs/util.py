# -*- test-case-name: sftpfs.test.test_util -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Helpers that work on any L{IFilesystem}, whether its methods return values
or L{Deferred}s.  Every helper returns a L{Deferred}.
"""

from __future__ import annotations

import errno
import os
import posixpath

from twisted.internet import defer

from sftpfs.error import fsError, isExists, isNotFound
from sftpfs.info import DirEntry


@defer.inlineCallbacks
def mkdirAll(filesystem, path: str, mode: int = 0o777):
    """
    Create C{path} and every missing parent.

    @raise NotADirectoryError: if some prefix of C{path} exists and is not a
        directory.
    """
    current = "/"
    for part in [p for p in path.split("/") if p]:
        current = posixpath.join(current, part)
        try:
            info = yield defer.maybeDeferred(filesystem.stat, current)
        except OSError as e:
            if not isNotFound(e):
                raise
        else:
            if not info.isDir():
                raise fsError(errno.ENOTDIR, current)
            continue
        try:
            yield defer.maybeDeferred(filesystem.mkdir, current, mode)
        except OSError as e:
            # Lost a race with someone else creating it.
            if not isExists(e):
                raise
            info = yield defer.maybeDeferred(filesystem.stat, current)
            if not info.isDir():
                raise fsError(errno.ENOTDIR, current)


@defer.inlineCallbacks
def removeAll(filesystem, path: str):
    """
    Remove C{path}; a directory is emptied depth first.  Symbolic links are
    removed, not followed.  A missing C{path} is not an error.
    """
    try:
        info = yield defer.maybeDeferred(filesystem.lstat, path)
    except OSError as e:
        if isNotFound(e):
            return
        raise
    if info.isDir():
        entries = yield defer.maybeDeferred(filesystem.readDir, path)
        for entry in entries:
            yield removeAll(filesystem, posixpath.join(path, entry.name))
    yield defer.maybeDeferred(filesystem.remove, path)


@defer.inlineCallbacks
def readFile(filesystem, path: str):
    """
    @return: a L{Deferred} firing with the whole content of C{path}.
    """
    f = yield defer.maybeDeferred(filesystem.open, path)
    try:
        data = yield defer.maybeDeferred(f.read, -1)
    finally:
        yield defer.maybeDeferred(f.close)
    return data


@defer.inlineCallbacks
def writeFile(filesystem, path: str, data: bytes, mode: int = 0o666):
    """
    Replace the content of C{path} with C{data}, creating it with C{mode} if
    needed.
    """
    f = yield defer.maybeDeferred(
        filesystem.openFile, path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode
    )
    try:
        yield defer.maybeDeferred(f.write, data)
    finally:
        yield defer.maybeDeferred(f.close)


@defer.inlineCallbacks
def scanDir(filesystem, path: str):
    """
    @return: a L{Deferred} firing with a L{DirEntry} per entry of C{path}.
    """
    infos = yield defer.maybeDeferred(filesystem.readDir, path)
    return [DirEntry.fromInfo(info) for info in infos]
