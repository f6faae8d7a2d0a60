# -*- test-case-name: sftpfs.test.test_memory -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Interface documentation for sftpfs.

Every method below may return its result directly or a
L{Deferred<twisted.internet.defer.Deferred>} that fires with it, the same
convention L{twisted.conch.ssh.filetransfer.ISFTPServer} uses.  Paths are
slash-delimited absolute C{str}; open flags are C{os.O_*} values and modes
are C{stat}-module integers.
"""

from zope.interface import Interface


class IFile(Interface):
    """
    An open file or directory handle.
    """

    def name():
        """
        @return: the path this handle was opened with.
        @rtype: L{str}
        """

    def read(size=-1):
        """
        Read up to C{size} bytes from the current position and advance it.

        @param size: the number of bytes wanted, or a negative number to read
            until end of file.
        @return: the bytes read; C{b""} at end of file.
        """

    def readAt(offset, length):
        """
        Read up to C{length} bytes at C{offset} without moving the position.
        """

    def write(data):
        """
        Write C{data} at the current position and advance it.

        @return: the number of bytes written.
        """

    def writeAt(offset, data):
        """
        Write C{data} at C{offset} without moving the position.

        @return: the number of bytes written.
        """

    def writeString(s):
        """
        Write the UTF-8 encoding of C{s}.
        """

    def seek(offset, whence=0):
        """
        Move the position.  A negative resulting position raises
        C{OSError(EINVAL)}.

        @param whence: one of C{os.SEEK_SET}, C{os.SEEK_CUR} or
            C{os.SEEK_END}.
        @return: the new absolute position.
        """

    def close():
        """
        Release the handle.  Closing twice reports the first close's outcome.
        """

    def stat():
        """
        @return: the L{sftpfs.info.FileInfo} for the open file.
        """

    def sync():
        """
        Flush buffered data.  May be a no-op.
        """

    def truncate(size):
        """
        Resize the file to exactly C{size} bytes, zero-filling growth.
        """

    def readDir(n=0):
        """
        Read directory entries from a directory handle.

        With C{n <= 0} every remaining entry is returned and later calls
        return C{[]}.  With C{n > 0} at most C{n} entries are returned and an
        exhausted handle raises L{EOFError}.

        @return: a L{list} of L{sftpfs.info.FileInfo}.
        """

    def readDirNames(n=0):
        """
        Like L{readDir}, returning only the entry names.
        """


class IFilesystem(Interface):
    """
    A filesystem without symbolic link support.
    """

    def openFile(path, flags, mode):
        """
        Open C{path}.

        @param flags: a bitwise OR of C{os.O_*} flags.
        @param mode: permission bits for a file created by C{os.O_CREAT}.
        @return: an L{IFile} provider.
        """

    def open(path):
        """
        Open C{path} read-only.
        """

    def create(path):
        """
        Open C{path} read-write, creating or truncating it, with mode 0666.
        """

    def mkdir(path, mode):
        """
        Create the directory C{path}.
        """

    def mkdirAll(path, mode):
        """
        Create C{path} and any missing parents.  An existing directory is not
        an error; an existing non-directory is.
        """

    def remove(path):
        """
        Remove the file or empty directory C{path}.
        """

    def removeAll(path):
        """
        Remove C{path} and everything below it.  A missing path is not an
        error.
        """

    def rename(oldpath, newpath):
        """
        Rename C{oldpath} to C{newpath}.
        """

    def stat(path):
        """
        @return: the L{sftpfs.info.FileInfo} for C{path}, following symbolic
            links.
        """

    def lstat(path):
        """
        @return: the L{sftpfs.info.FileInfo} for C{path}, not following a
            final symbolic link.
        """

    def chmod(path, mode):
        """
        Change the permission bits of C{path}.
        """

    def chtimes(path, atime, mtime):
        """
        Set the access and modification times of C{path}, in seconds since
        the epoch.
        """

    def chown(path, uid, gid):
        """
        Change the owner and group of C{path}.
        """

    def truncate(path, size):
        """
        Resize the file at C{path} to exactly C{size} bytes.
        """

    def readDir(path):
        """
        @return: a L{list} of L{sftpfs.info.FileInfo}, one per entry of the
            directory C{path}.
        """


class ISymlinkFilesystem(IFilesystem):
    """
    A filesystem that supports symbolic links.
    """

    def symlink(target, link):
        """
        Create a symbolic link at C{link} pointing at C{target}.
        """

    def readlink(link):
        """
        @return: the target recorded in the symbolic link C{link}.
        """


class ISFTPClientFile(Interface):
    """
    An open remote handle, as exposed by an SFTP client library.  All
    methods return L{Deferred}s.
    """

    def readChunk(offset, length):
        """
        Read at most C{length} bytes at C{offset}.  Fails with L{EOFError}
        past the end.
        """

    def writeChunk(offset, data):
        """
        Write C{data} at C{offset}.
        """

    def stat():
        """
        Stat the handle.
        """

    def truncate(size):
        """
        Resize the file behind the handle.
        """

    def close():
        """
        Close the handle.
        """


class ISFTPClient(Interface):
    """
    The minimal set of SFTP operations the client adapter consumes.  All
    methods return L{Deferred}s and fail with the library's own errors;
    translating them is the adapter's job.
    """

    def openFile(path, flags):
        """
        Open C{path} with C{os.O_*} C{flags}.

        @return: a L{Deferred} firing with an L{ISFTPClientFile}.
        """

    def mkdir(path):
        """
        Create a directory.
        """

    def remove(path):
        """
        Remove a file or an empty directory.
        """

    def rename(oldpath, newpath):
        """
        Rename a path.
        """

    def stat(path):
        """
        Stat following links.
        """

    def lstat(path):
        """
        Stat without following a final link.
        """

    def chmod(path, mode):
        """
        Change permission bits.
        """

    def chtimes(path, atime, mtime):
        """
        Set access and modification times.
        """

    def chown(path, uid, gid):
        """
        Change ownership.
        """

    def truncate(path, size):
        """
        Resize a file by path.
        """

    def readDir(path):
        """
        List a directory, without C{.} and C{..}.
        """

    def close():
        """
        Close the SFTP session and the connection carrying it.
        """


class ISymlinkClient(ISFTPClient):
    """
    An L{ISFTPClient} that can create and read symbolic links.
    """

    def symlink(target, link):
        """
        Create C{link} pointing at C{target}.
        """

    def readlink(link):
        """
        Read the target of C{link}.
        """


class IMakeDirectories(Interface):
    """
    An L{ISFTPClient} with a native recursive mkdir.
    """

    def mkdirAll(path):
        """
        Create C{path} and every missing parent.
        """

