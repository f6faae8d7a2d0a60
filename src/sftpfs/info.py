# -*- test-case-name: sftpfs.test.test_info -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
File metadata values shared by the client and server faces.
"""

from __future__ import annotations

import stat
from typing import Any, Callable, Dict, Optional

import attr

from twisted.conch.ls import lsLine


@attr.s(auto_attribs=True, frozen=True)
class FileInfo:
    """
    Metadata for one filesystem entry.

    @ivar name: the basename of the entry.
    @ivar size: the size in bytes; meaningless for directories.
    @ivar mode: type and permission bits, as in L{os.stat_result.st_mode}.
    @ivar mtime: modification time in seconds since the epoch.
    @ivar sys: implementation specific data; the raw SFTP attribute dict for
        entries that came over the wire.
    """

    name: str
    size: int = 0
    mode: int = stat.S_IFREG | 0o644
    mtime: float = 0
    sys: Optional[Any] = attr.ib(default=None, eq=False, repr=False)

    def isDir(self) -> bool:
        return stat.S_ISDIR(self.mode)

    def isSymlink(self) -> bool:
        return stat.S_ISLNK(self.mode)

    def permissions(self) -> int:
        return stat.S_IMODE(self.mode)

    def toAttrs(self) -> Dict[str, int]:
        """
        Convert to the attribute dict L{twisted.conch.ssh.filetransfer}
        packs on the wire.
        """
        attrs = {
            "size": self.size,
            "permissions": self.mode,
            "atime": int(self.mtime),
            "mtime": int(self.mtime),
        }
        if isinstance(self.sys, dict):
            for key in ("uid", "gid", "atime"):
                if key in self.sys:
                    attrs[key] = self.sys[key]
        return attrs

    @classmethod
    def fromAttrs(cls, name: str, attrs: Dict[str, Any]) -> "FileInfo":
        """
        Build a L{FileInfo} from an SFTP attribute dict.  Missing fields are
        zero.
        """
        return cls(
            name=name,
            size=attrs.get("size", 0),
            mode=attrs.get("permissions", 0),
            mtime=attrs.get("mtime", 0),
            sys=attrs,
        )


@attr.s(auto_attribs=True)
class DirEntry:
    """
    A directory entry whose full L{FileInfo} is fetched on demand.
    """

    name: str
    _type: int
    _loader: Callable[[], Any] = attr.ib(repr=False)

    def isDir(self) -> bool:
        return self._type == stat.S_IFDIR

    def type(self) -> int:
        """
        @return: the C{S_IFMT} bits of the entry's mode.
        """
        return self._type

    def info(self):
        """
        @return: the entry's L{FileInfo}, or a L{Deferred} firing with it.
        """
        return self._loader()

    @classmethod
    def fromInfo(cls, info: FileInfo) -> "DirEntry":
        return cls(info.name, stat.S_IFMT(info.mode), lambda: info)


@attr.s(auto_attribs=True, frozen=True)
class _LsStat:
    """
    The fields of a stat result that L{lsLine} reads.
    """

    st_mode: int
    st_nlink: int
    st_uid: str
    st_gid: str
    st_size: int
    st_mtime: float


def longName(info: FileInfo, owner: str = "0", group: str = "0") -> str:
    """
    Format C{info} like a line of C{ls -l}, for the SFTP C{longname} field.
    """
    return lsLine(
        info.name, _LsStat(info.mode, 1, owner, group, info.size, info.mtime)
    )
