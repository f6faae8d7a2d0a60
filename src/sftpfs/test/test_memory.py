# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Tests for L{sftpfs.memory}.
"""

import errno
import os
import stat

from zope.interface.verify import verifyObject

from twisted.trial.unittest import SynchronousTestCase

from sftpfs.interfaces import IFile, ISymlinkFilesystem
from sftpfs.memory import MemoryFilesystem


class FakeTime:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class MemoryFilesystemTests(SynchronousTestCase):
    """
    Tests for L{MemoryFilesystem}.
    """

    def setUp(self):
        self.time = FakeTime()
        self.fs = MemoryFilesystem(now=self.time)

    def write(self, path, data):
        f = self.fs.create(path)
        f.write(data)
        f.close()

    def read(self, path):
        f = self.fs.open(path)
        try:
            return f.read()
        finally:
            f.close()

    def test_interfaces(self):
        """
        L{MemoryFilesystem} and its handles provide their interfaces.
        """
        self.assertTrue(verifyObject(ISymlinkFilesystem, self.fs))
        self.assertTrue(verifyObject(IFile, self.fs.create("/f")))

    def test_roundTrip(self):
        """
        What is written is read back, whatever the bytes.
        """
        data = bytes(range(256)) * 8
        self.write("/data.bin", data)
        self.assertEqual(self.read("/data.bin"), data)
        self.assertEqual(self.fs.stat("/data.bin").size, len(data))

    def test_openMissing(self):
        """
        Opening a missing file without C{O_CREAT} fails with not-found.
        """
        self.assertRaises(FileNotFoundError, self.fs.open, "/missing")

    def test_exclusive(self):
        """
        C{O_CREAT | O_EXCL} fails on an existing file.
        """
        self.write("/f", b"x")
        self.assertRaises(
            FileExistsError,
            self.fs.openFile,
            "/f",
            os.O_WRONLY | os.O_CREAT | os.O_EXCL,
            0o600,
        )

    def test_createMode(self):
        """
        A created file gets the requested permissions.
        """
        self.fs.openFile("/f", os.O_WRONLY | os.O_CREAT, 0o600).close()
        self.assertEqual(self.fs.stat("/f").mode, stat.S_IFREG | 0o600)

    def test_truncateOnOpen(self):
        """
        C{O_TRUNC} empties an existing file.
        """
        self.write("/f", b"content")
        self.fs.openFile("/f", os.O_WRONLY | os.O_TRUNC, 0).close()
        self.assertEqual(self.read("/f"), b"")

    def test_append(self):
        """
        Writes through an C{O_APPEND} handle land at the end.
        """
        self.write("/f", b"abc")
        f = self.fs.openFile("/f", os.O_WRONLY | os.O_APPEND, 0)
        f.seek(0)
        f.write(b"def")
        f.writeAt(0, b"g")
        f.close()
        self.assertEqual(self.read("/f"), b"abcdefg")

    def test_openDirectoryForWriting(self):
        """
        A directory cannot be opened for writing.
        """
        self.fs.mkdir("/d", 0o755)
        self.assertRaises(
            IsADirectoryError, self.fs.openFile, "/d", os.O_WRONLY, 0
        )

    def test_directoryHandleIsReadOnly(self):
        """
        Reading or writing a directory handle fails.
        """
        self.fs.mkdir("/d", 0o755)
        d = self.fs.open("/d")
        self.assertRaises(IsADirectoryError, d.read)
        self.assertRaises(IsADirectoryError, d.write, b"x")

    def test_mkdir(self):
        """
        L{MemoryFilesystem.mkdir} creates a directory; creating it again,
        or below a missing parent, fails.
        """
        self.fs.mkdir("/d", 0o700)
        self.assertEqual(self.fs.stat("/d").mode, stat.S_IFDIR | 0o700)
        self.assertRaises(FileExistsError, self.fs.mkdir, "/d", 0o700)
        self.assertRaises(FileNotFoundError, self.fs.mkdir, "/x/y", 0o700)

    def test_mkdirAll(self):
        """
        L{MemoryFilesystem.mkdirAll} creates every missing parent and
        accepts an existing directory, but not an existing file.
        """
        self.fs.mkdirAll("/a/b/c", 0o755)
        self.assertTrue(self.fs.stat("/a/b/c").isDir())
        self.fs.mkdirAll("/a/b", 0o755)
        self.write("/a/file", b"")
        self.assertRaises(NotADirectoryError, self.fs.mkdirAll, "/a/file/x", 0o755)

    def test_remove(self):
        """
        L{MemoryFilesystem.remove} removes files and empty directories only.
        """
        self.fs.mkdir("/d", 0o755)
        self.write("/d/f", b"")
        e = self.assertRaises(OSError, self.fs.remove, "/d")
        self.assertEqual(e.errno, errno.ENOTEMPTY)
        self.fs.remove("/d/f")
        self.fs.remove("/d")
        self.assertRaises(FileNotFoundError, self.fs.stat, "/d")
        self.assertRaises(FileNotFoundError, self.fs.remove, "/d")

    def test_removeAll(self):
        """
        L{MemoryFilesystem.removeAll} removes a tree; a missing path is not
        an error.
        """
        self.fs.mkdirAll("/a/b", 0o755)
        self.write("/a/b/f", b"x")
        self.fs.removeAll("/a")
        self.assertRaises(FileNotFoundError, self.fs.stat, "/a")
        self.fs.removeAll("/a")
        self.fs.removeAll("/nothing/below")

    def test_rename(self):
        """
        After a rename the old name is gone and the new one holds the data.
        """
        self.write("/old", b"content")
        self.fs.rename("/old", "/new")
        self.assertRaises(FileNotFoundError, self.fs.stat, "/old")
        self.assertEqual(self.read("/new"), b"content")

    def test_renameIntoItself(self):
        """
        A directory cannot be moved below itself.
        """
        self.fs.mkdirAll("/a/b", 0o755)
        e = self.assertRaises(OSError, self.fs.rename, "/a", "/a/b/c")
        self.assertEqual(e.errno, errno.EINVAL)

    def test_renameOverDirectory(self):
        """
        A file cannot replace a directory.
        """
        self.fs.mkdir("/d", 0o755)
        self.write("/f", b"")
        self.assertRaises(IsADirectoryError, self.fs.rename, "/f", "/d")

    def test_attributes(self):
        """
        L{MemoryFilesystem.chmod}, C{chtimes} and C{chown} change what
        L{MemoryFilesystem.stat} reports.
        """
        self.write("/f", b"")
        self.fs.chmod("/f", 0o601)
        self.fs.chtimes("/f", 5, 7)
        self.fs.chown("/f", 100, 200)
        info = self.fs.stat("/f")
        self.assertEqual(info.permissions(), 0o601)
        self.assertEqual(info.mtime, 7)
        self.assertEqual(info.sys, {"uid": 100, "gid": 200, "atime": 5})

    def test_truncate(self):
        """
        Truncating grows with zeros and shrinks by discarding the tail.
        """
        self.write("/f", b"abcdef")
        self.fs.truncate("/f", 3)
        self.assertEqual(self.read("/f"), b"abc")
        self.fs.truncate("/f", 5)
        self.assertEqual(self.read("/f"), b"abc\0\0")
        self.assertRaises(OSError, self.fs.truncate, "/f", -1)

    def test_modificationTime(self):
        """
        Writes stamp the file with the current time.
        """
        self.write("/f", b"")
        self.time.now = 2000.0
        f = self.fs.openFile("/f", os.O_WRONLY, 0)
        f.write(b"x")
        self.assertEqual(self.fs.stat("/f").mtime, 2000.0)

    def test_readDirSorted(self):
        """
        L{MemoryFilesystem.readDir} lists entries sorted by name.
        """
        self.fs.mkdir("/d", 0o755)
        for name in ["c.txt", "a.txt", "b.txt"]:
            self.write("/d/" + name, b"")
        self.fs.mkdir("/d/subdir", 0o755)
        self.assertEqual(
            [info.name for info in self.fs.readDir("/d")],
            ["a.txt", "b.txt", "c.txt", "subdir"],
        )
        self.assertRaises(NotADirectoryError, self.fs.readDir, "/d/a.txt")

    def test_symlink(self):
        """
        C{stat} follows links, C{lstat} does not, and C{readlink} returns the
        target.
        """
        self.write("/target", b"data")
        self.fs.symlink("/target", "/link")
        self.assertEqual(self.fs.readlink("/link"), "/target")
        self.assertEqual(self.fs.stat("/link").size, 4)
        self.assertFalse(self.fs.stat("/link").isSymlink())
        self.assertTrue(self.fs.lstat("/link").isSymlink())
        self.assertEqual(self.read("/link"), b"data")

    def test_relativeSymlink(self):
        """
        Relative targets resolve against the directory holding the link.
        """
        self.fs.mkdir("/d", 0o755)
        self.write("/d/target", b"data")
        self.fs.symlink("target", "/d/link")
        self.assertEqual(self.read("/d/link"), b"data")

    def test_brokenSymlink(self):
        """
        A dangling link can be lstat'ed and read, but not stat'ed.
        """
        self.fs.symlink("/nowhere", "/link")
        self.assertTrue(self.fs.lstat("/link").isSymlink())
        self.assertRaises(FileNotFoundError, self.fs.stat, "/link")
        self.assertEqual(self.fs.readlink("/link"), "/nowhere")

    def test_readlinkNotLink(self):
        """
        Reading a path that is not a link fails with C{EINVAL}.
        """
        self.write("/f", b"")
        e = self.assertRaises(OSError, self.fs.readlink, "/f")
        self.assertEqual(e.errno, errno.EINVAL)

    def test_symlinkLoop(self):
        """
        Following a cycle of links fails with C{ELOOP}.
        """
        self.fs.symlink("/b", "/a")
        self.fs.symlink("/a", "/b")
        e = self.assertRaises(OSError, self.fs.stat, "/a")
        self.assertEqual(e.errno, errno.ELOOP)

    def test_removeLink(self):
        """
        Removing a link leaves its target alone.
        """
        self.write("/target", b"data")
        self.fs.symlink("/target", "/link")
        self.fs.remove("/link")
        self.assertEqual(self.read("/target"), b"data")


class MemoryFileTests(SynchronousTestCase):
    """
    Tests for L{sftpfs.memory.MemoryFile}.
    """

    def setUp(self):
        self.fs = MemoryFilesystem()
        self.f = self.fs.create("/f")
        self.f.write(b"0123456789")

    def test_seek(self):
        """
        L{MemoryFile.seek} supports the three origins and rejects negative
        positions.
        """
        self.assertEqual(self.f.seek(2), 2)
        self.assertEqual(self.f.seek(3, os.SEEK_CUR), 5)
        self.assertEqual(self.f.seek(-1, os.SEEK_END), 9)
        self.assertEqual(self.f.read(), b"9")
        e = self.assertRaises(OSError, self.f.seek, -1)
        self.assertEqual(e.errno, errno.EINVAL)

    def test_readPastEnd(self):
        """
        Reading at or past the end returns no bytes.
        """
        self.f.seek(20)
        self.assertEqual(self.f.read(5), b"")
        self.assertEqual(self.f.readAt(10, 5), b"")

    def test_positional(self):
        """
        L{MemoryFile.readAt} and L{MemoryFile.writeAt} leave the sequential
        position alone.
        """
        self.f.seek(1)
        self.f.writeAt(5, b"XXXXX")
        self.assertEqual(self.f.readAt(0, 10), b"01234XXXXX")
        self.assertEqual(self.f.read(2), b"12")

    def test_writePastEnd(self):
        """
        Writing past the end fills the gap with zeros.
        """
        self.f.writeAt(12, b"!")
        self.assertEqual(self.f.readAt(8, -1), b"89\0\0!")

    def test_writeString(self):
        """
        L{MemoryFile.writeString} writes UTF-8.
        """
        self.f.truncate(0)
        self.f.seek(0)
        self.assertEqual(self.f.writeString("\N{SNOWMAN}"), 3)
        self.assertEqual(self.f.readAt(0, -1), "\N{SNOWMAN}".encode("utf-8"))

    def test_closed(self):
        """
        A closed handle refuses every operation.
        """
        self.f.close()
        for call in [self.f.read, self.f.stat, self.f.sync, lambda: self.f.seek(0)]:
            e = self.assertRaises(OSError, call)
            self.assertEqual(e.errno, errno.EBADF)

    def test_readOnly(self):
        """
        A handle opened read-only cannot write.
        """
        f = self.fs.open("/f")
        e = self.assertRaises(OSError, f.write, b"x")
        self.assertEqual(e.errno, errno.EBADF)

    def test_stat(self):
        """
        L{MemoryFile.stat} describes the open file.
        """
        info = self.f.stat()
        self.assertEqual((info.name, info.size), ("f", 10))

    def test_readDir(self):
        """
        A directory handle hands out entries through a cursor that ends with
        L{EOFError}.
        """
        self.fs.mkdir("/d", 0o755)
        for name in "abc":
            self.fs.create("/d/" + name).close()
        d = self.fs.open("/d")
        self.assertEqual(d.readDirNames(2), ["a", "b"])
        self.assertEqual(d.readDirNames(2), ["c"])
        self.assertRaises(EOFError, d.readDir, 1)
        self.assertEqual(d.readDir(0), [])

    def test_readDirOnFile(self):
        """
        Listing a regular file handle fails with not-a-directory.
        """
        self.assertRaises(NotADirectoryError, self.f.readDir)
