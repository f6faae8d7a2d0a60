# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Reactor lookup shared by the client and server.
"""

from __future__ import annotations

from typing import Any


def maybeGlobalReactor(maybeReactor: Any) -> Any:
    """
    @return: the argument, or the global reactor if the argument is L{None}.
    """
    if maybeReactor is None:
        from twisted.internet import reactor

        return reactor
    return maybeReactor
