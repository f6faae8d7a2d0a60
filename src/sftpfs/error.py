# -*- test-case-name: sftpfs.test.test_error -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Error kinds raised by sftpfs.

Filesystem errors are L{OSError}s carrying an errno, so the standard
subclasses (L{FileNotFoundError}, L{FileExistsError}, ...) classify them.
"""

from __future__ import annotations

import errno
import os
from contextlib import contextmanager
from typing import Optional

from twisted.conch.ssh import filetransfer
from twisted.cred.error import UnauthorizedLogin
from twisted.internet.error import ConnectionDone, ConnectionLost

_ERRNO_BY_CODE = {
    filetransfer.FX_NO_SUCH_FILE: errno.ENOENT,
    filetransfer.FX_PERMISSION_DENIED: errno.EACCES,
    filetransfer.FX_FILE_ALREADY_EXISTS: errno.EEXIST,
}


class UnsupportedOperation(NotImplementedError):
    """
    The filesystem does not implement the requested operation.
    """


class AuthenticationFailed(UnauthorizedLogin):
    """
    The credentials offered were rejected.
    """


class HostKeyRejected(Exception):
    """
    The host key callback refused the key the server presented.
    """


class ConnectError(Exception):
    """
    Every attempt to connect failed.

    @ivar attempts: the number of attempts made.
    """

    def __init__(self, attempts: int, reason: BaseException) -> None:
        Exception.__init__(
            self, f"failed to connect after {attempts} attempts: {reason}"
        )
        self.attempts = attempts
        self.reason = reason


def fsError(code: int, path: Optional[str] = None, message: Optional[str] = None):
    """
    Create the L{OSError} subclass matching C{code}.

    @param code: an L{errno} value.
    @return: for example a L{FileNotFoundError} for C{errno.ENOENT}.
    """
    return OSError(code, message or os.strerror(code), path)


def wrapError(
    operation: str, path: str, err: BaseException, *, message: Optional[str] = None
) -> BaseException:
    """
    Add operation and path context to C{err}.

    L{OSError}s, remote SFTP status errors and lost connections become an
    L{OSError} of the matching errno whose message reads
    C{sftpfs.Operation(path): reason}; the caller chains C{err} as its
    C{__cause__}.  A remote C{FX_OP_UNSUPPORTED}, which
    L{FileTransferClient <filetransfer.FileTransferClient>} reports as a
    L{NotImplementedError}, becomes an L{UnsupportedOperation}.  Anything
    else, including L{EOFError}, is returned unchanged.
    """
    context = f"sftpfs.{operation}({message or path})"
    if isinstance(err, OSError) and err.errno is not None:
        code = err.errno
        reason = err.strerror or os.strerror(code)
    elif isinstance(err, filetransfer.SFTPError):
        if err.code == filetransfer.FX_OP_UNSUPPORTED:
            return UnsupportedOperation(f"{context}: {_text(err.message)}")
        code = _ERRNO_BY_CODE.get(err.code, errno.EIO)
        reason = _text(err.message) or os.strerror(code)
    elif isinstance(err, NotImplementedError) and not isinstance(
        err, UnsupportedOperation
    ):
        detail = err.args[0] if err.args else ""
        return UnsupportedOperation(f"{context}: {_text(detail)}")
    elif isinstance(err, (ConnectionLost, ConnectionDone)):
        code = errno.EIO
        reason = "connection lost"
    else:
        return err
    return OSError(code, f"{context}: {reason}", path)


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return value or ""


def _chain(err: Optional[BaseException]):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or getattr(err, "reason", None)
        if not isinstance(err, BaseException):
            err = None


def isNotFound(err: BaseException) -> bool:
    """
    Is C{err}, or anything it wraps, a not-found error?
    """
    for e in _chain(err):
        if isinstance(e, FileNotFoundError):
            return True
        if isinstance(e, filetransfer.SFTPError):
            return e.code == filetransfer.FX_NO_SUCH_FILE
    return False


def isExists(err: BaseException) -> bool:
    """
    Is C{err}, or anything it wraps, an already-exists error?
    """
    for e in _chain(err):
        if isinstance(e, FileExistsError):
            return True
        if isinstance(e, filetransfer.SFTPError):
            return e.code == filetransfer.FX_FILE_ALREADY_EXISTS
    return False


def isAuthenticationFailed(err: BaseException) -> bool:
    """
    Is C{err}, or anything it wraps, an authentication failure?
    """
    return any(isinstance(e, UnauthorizedLogin) for e in _chain(err))


@contextmanager
def errorContext(operation: str, path: str, message: Optional[str] = None):
    """
    Re-raise errors escaping the block through L{wrapError}, chaining the
    original.

    This may wrap a C{yield} in an L{inlineCallbacks
    <twisted.internet.defer.inlineCallbacks>} generator, since a failed
    L{Deferred} is thrown back into the generator at the C{yield}.
    """
    try:
        yield
    except Exception as e:
        wrapped = wrapError(operation, path, e, message=message)
        if wrapped is e:
            raise
        raise wrapped from e
