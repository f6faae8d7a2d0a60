# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Tests for L{sftpfs.osfs}.
"""

import errno
import os
import stat

from zope.interface.verify import verifyObject

from twisted.python.filepath import FilePath
from twisted.trial.unittest import SynchronousTestCase

from sftpfs.interfaces import IFile, ISymlinkFilesystem
from sftpfs.osfs import OSFilesystem


class OSFilesystemTests(SynchronousTestCase):
    """
    Tests for L{OSFilesystem}.
    """

    def setUp(self):
        self.root = FilePath(self.mktemp())
        self.root.makedirs()
        self.fs = OSFilesystem(self.root)

    def write(self, path, data):
        f = self.fs.create(path)
        try:
            f.write(data)
        finally:
            f.close()

    def read(self, path):
        f = self.fs.open(path)
        try:
            return f.read()
        finally:
            f.close()

    def test_interfaces(self):
        """
        L{OSFilesystem} and its handles provide their interfaces.
        """
        self.assertTrue(verifyObject(ISymlinkFilesystem, self.fs))
        f = self.fs.create("/f")
        self.addCleanup(f.close)
        self.assertTrue(verifyObject(IFile, f))

    def test_rootFromString(self):
        """
        The root may be given as a path string.
        """
        fs = OSFilesystem(self.root.path)
        self.assertEqual(fs.root, self.root)

    def test_roundTrip(self):
        """
        Data written below the root lands in the matching file on disk.
        """
        data = bytes(range(256)) * 4
        self.write("/data.bin", data)
        self.assertEqual(self.root.child("data.bin").getContent(), data)
        self.assertEqual(self.read("/data.bin"), data)
        self.assertEqual(self.fs.stat("/data.bin").size, len(data))

    def test_confined(self):
        """
        C{..} cannot climb above the root.
        """
        self.write("/inside", b"x")
        self.assertEqual(self.read("/../../inside"), b"x")

    def test_errorNamesVirtualPath(self):
        """
        Errors report the path as the client sees it.
        """
        e = self.assertRaises(FileNotFoundError, self.fs.stat, "/missing")
        self.assertEqual(e.filename, "/missing")

    def test_mkdirAll(self):
        """
        L{OSFilesystem.mkdirAll} creates parents and accepts an existing
        directory.
        """
        self.fs.mkdirAll("/a/b/c", 0o755)
        self.assertTrue(self.root.descendant(["a", "b", "c"]).isdir())
        self.fs.mkdirAll("/a/b/c", 0o755)

    def test_remove(self):
        """
        L{OSFilesystem.remove} removes files and empty directories.
        """
        self.fs.mkdir("/d", 0o755)
        self.write("/d/f", b"")
        e = self.assertRaises(OSError, self.fs.remove, "/d")
        self.assertEqual(e.errno, errno.ENOTEMPTY)
        self.fs.remove("/d/f")
        self.fs.remove("/d")
        self.assertFalse(self.root.child("d").exists())

    def test_removeAll(self):
        """
        L{OSFilesystem.removeAll} removes a tree; a missing path is fine.
        """
        self.fs.mkdirAll("/a/b", 0o755)
        self.write("/a/b/f", b"x")
        self.fs.removeAll("/a")
        self.assertFalse(self.root.child("a").exists())
        self.fs.removeAll("/a")

    def test_mkdirAllMode(self):
        """
        The new leaf directory gets C{mode}.
        """
        self.fs.mkdirAll("/m/n", 0o700)
        self.assertEqual(stat.S_IMODE(self.fs.stat("/m/n").mode), 0o700)

    def test_mkdirAllOverFile(self):
        """
        An existing file in the way is an already-exists error naming the
        requested path.
        """
        self.write("/f", b"")
        e = self.assertRaises(FileExistsError, self.fs.mkdirAll, "/f", 0o755)
        self.assertEqual(e.filename, "/f")

    def test_removeAllKeepsLinkTarget(self):
        """
        A link to a directory is removed without touching what it points to.
        """
        self.fs.mkdirAll("/target", 0o755)
        self.write("/target/keep", b"x")
        self.fs.mkdir("/tree", 0o755)
        self.fs.symlink("../target", "/tree/link")
        self.fs.removeAll("/tree")
        self.assertFalse(self.root.child("tree").exists())
        self.assertEqual(self.read("/target/keep"), b"x")

    def test_rename(self):
        """
        L{OSFilesystem.rename} moves entries below the root.
        """
        self.write("/old", b"content")
        self.fs.rename("/old", "/new")
        self.assertRaises(FileNotFoundError, self.fs.stat, "/old")
        self.assertEqual(self.read("/new"), b"content")

    def test_attributes(self):
        """
        L{OSFilesystem.chmod} and C{chtimes} change the file on disk.
        """
        self.write("/f", b"")
        self.fs.chmod("/f", 0o640)
        self.fs.chtimes("/f", 100, 200)
        info = self.fs.stat("/f")
        self.assertEqual(info.permissions(), 0o640)
        self.assertEqual(info.mtime, 200)
        self.assertEqual(info.sys["atime"], 100)

    def test_truncate(self):
        """
        L{OSFilesystem.truncate} grows with zeros and shrinks.
        """
        self.write("/f", b"abcdef")
        self.fs.truncate("/f", 2)
        self.assertEqual(self.read("/f"), b"ab")
        self.fs.truncate("/f", 4)
        self.assertEqual(self.read("/f"), b"ab\0\0")

    def test_readDir(self):
        """
        L{OSFilesystem.readDir} lists sorted entries without following links.
        """
        self.fs.mkdir("/d", 0o755)
        self.write("/d/b", b"")
        self.write("/d/a", b"")
        self.fs.symlink("/nowhere", "/d/c")
        infos = self.fs.readDir("/d")
        self.assertEqual([info.name for info in infos], ["a", "b", "c"])
        self.assertTrue(infos[2].isSymlink())

    def test_symlink(self):
        """
        Links are stored verbatim, C{lstat} does not follow them and a
        dangling one fails C{stat}.
        """
        self.fs.symlink("/nowhere", "/link")
        self.assertEqual(self.fs.readlink("/link"), "/nowhere")
        self.assertTrue(self.fs.lstat("/link").isSymlink())
        self.assertRaises(FileNotFoundError, self.fs.stat, "/link")


class OSFileTests(SynchronousTestCase):
    """
    Tests for L{sftpfs.osfs.OSFile}.
    """

    def setUp(self):
        root = FilePath(self.mktemp())
        root.makedirs()
        self.fs = OSFilesystem(root)
        self.f = self.fs.create("/f")
        self.addCleanup(self.f.close)
        self.f.write(b"0123456789")

    def test_positional(self):
        """
        L{OSFile.writeAt} and L{OSFile.readAt} leave the position alone.
        """
        self.f.seek(1)
        self.f.writeAt(5, b"XXXXX")
        self.assertEqual(self.f.readAt(0, -1), b"01234XXXXX")
        self.assertEqual(self.f.read(2), b"12")

    def test_seekEnd(self):
        """
        L{OSFile.seek} accepts C{os.SEEK_END}.
        """
        self.assertEqual(self.f.seek(-2, os.SEEK_END), 8)
        self.assertEqual(self.f.read(), b"89")

    def test_stat(self):
        """
        L{OSFile.stat} describes the open file under its virtual name.
        """
        info = self.f.stat()
        self.assertEqual((info.name, info.size), ("f", 10))

    def test_truncateAndSync(self):
        """
        L{OSFile.truncate} resizes the file; L{OSFile.sync} flushes it.
        """
        self.f.truncate(3)
        self.f.sync()
        self.assertEqual(self.fs.stat("/f").size, 3)

    def test_closeTwice(self):
        """
        Closing twice is harmless, and a closed handle refuses I/O.
        """
        self.f.close()
        self.f.close()
        e = self.assertRaises(OSError, self.f.read)
        self.assertEqual(e.errno, errno.EBADF)

    def test_readDir(self):
        """
        A directory handle pages through its listing.
        """
        self.fs.mkdir("/d", 0o755)
        for name in "abc":
            self.fs.create("/d/" + name).close()
        d = self.fs.open("/d")
        self.addCleanup(d.close)
        self.assertEqual(d.readDirNames(2), ["a", "b"])
        self.assertEqual(d.readDirNames(0), ["c"])
        self.assertRaises(EOFError, d.readDir, 1)

    def test_readDirOnFile(self):
        """
        Listing a regular file fails with not-a-directory.
        """
        self.assertRaises(NotADirectoryError, self.f.readDir)
