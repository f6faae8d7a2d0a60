# -*- test-case-name: sftpfs.test.test_file -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Resumable directory iteration shared by every file handle implementation.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from sftpfs.info import FileInfo


class DirectoryCursor:
    """
    A point-in-time listing and a monotonic position within it.

    @ivar entries: the listing, or L{None} until L{load} is called.
    @ivar position: index of the next entry to hand out.
    """

    def __init__(self) -> None:
        self.entries: Optional[List[FileInfo]] = None
        self.position = 0

    @property
    def loaded(self) -> bool:
        return self.entries is not None

    def load(self, entries: Sequence[FileInfo]) -> None:
        self.entries = list(entries)

    def next(self, n: int) -> List[FileInfo]:
        """
        Hand out the next entries.

        @param n: with C{n <= 0}, everything left; otherwise at most C{n}.
        @raise EOFError: when C{n > 0} and nothing is left.
        """
        assert self.entries is not None
        remaining = self.entries[self.position :]
        if n <= 0:
            self.position = len(self.entries)
            return remaining
        if not remaining:
            raise EOFError()
        batch = remaining[:n]
        self.position += len(batch)
        return batch
