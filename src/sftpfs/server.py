# -*- test-case-name: sftpfs.test.test_server -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
An SSH server whose only service is SFTP access to an L{IFilesystem}.

Build an L{SFTPServerFactory} from a filesystem and a L{ServerConfig} and
listen with it on any stream server endpoint::

    factory = SFTPServerFactory(MemoryFilesystem(), ServerConfig(
        hostKeys=[Key.fromFile("host_rsa")],
        passwordCallback=simplePasswordAuth("admin", "secret")))
    factory.listen(TCP4ServerEndpoint(reactor, 2222))
"""

from __future__ import annotations

import hmac
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import attr
from zope.interface import implementer

from twisted.conch.avatar import ConchUser
from twisted.conch.error import ValidPublicKey
from twisted.conch.interfaces import IConchUser, ISFTPServer
from twisted.conch.ssh import common, filetransfer
from twisted.conch.ssh.channel import SSHChannel
from twisted.conch.ssh.connection import SSHConnection
from twisted.conch.ssh.factory import SSHFactory
from twisted.conch.ssh.keys import Key
from twisted.conch.ssh.transport import SSHServerTransport
from twisted.conch.ssh.userauth import SSHUserAuthServer
from twisted.cred.checkers import AllowAnonymousAccess, ICredentialsChecker
from twisted.cred.credentials import (
    Anonymous,
    IAnonymous,
    ISSHPrivateKey,
    IUsernamePassword,
)
from twisted.cred.portal import IRealm, Portal
from twisted.internet import defer
from twisted.internet.error import ConnectionDone
from twisted.logger import Logger
from twisted.python import components
from twisted.python.failure import Failure

from sftpfs._reactor import maybeGlobalReactor
from sftpfs.error import AuthenticationFailed
from sftpfs.handlers import FilesystemHandler, SFTPServerForFilesystem

_log = Logger()


def _toKey(key: Union[Key, bytes]) -> Key:
    if isinstance(key, Key):
        return key
    return Key.fromString(key)


def _toKeys(keys) -> List[Key]:
    return [_toKey(key) for key in keys]


@attr.s(auto_attribs=True)
class ServerConfig:
    """
    How an L{SFTPServerFactory} authenticates and identifies itself.

    @ivar hostKeys: private host keys, as L{Key}s or in any format
        L{Key.fromString} reads.  At least one is required.
    @ivar passwordCallback: called with the user name (L{str}) and password
        (L{bytes}); returns a true value, or a L{defer.Deferred} firing with
        one, to let the user in.  A false result or an
        L{twisted.cred.error.UnauthorizedLogin} rejects the attempt.
    @ivar publicKeyCallback: like C{passwordCallback}, called with the user
        name and the offered public L{Key}.  The signature is checked
        separately.
    @ivar noClientAuth: let every client in without credentials.  Only
        meant for tests.
    @ivar maxAuthTries: failed authentication attempts before the client is
        disconnected.
    @ivar serverVersion: the SSH identification string sent to clients.
    """

    hostKeys: List[Key] = attr.ib(converter=_toKeys)
    passwordCallback: Optional[Callable] = None
    publicKeyCallback: Optional[Callable] = None
    noClientAuth: bool = False
    maxAuthTries: int = 6
    serverVersion: bytes = b"SSH-2.0-sftpfs"

    def validate(self) -> None:
        """
        @raise ValueError: if the configuration cannot run a server.
        """
        if not self.hostKeys:
            raise ValueError("at least one host key is required")
        if not (self.noClientAuth or self.passwordCallback or self.publicKeyCallback):
            raise ValueError(
                "a password or public key callback is required unless "
                "noClientAuth is set"
            )
        if self.maxAuthTries < 1:
            raise ValueError("maxAuthTries must be at least 1")


def simplePasswordAuth(username: str, password: Union[str, bytes]) -> Callable:
    """
    @return: a password callback accepting only C{username} with
        C{password}.
    """
    return multiUserPasswordAuth({username: password})


def multiUserPasswordAuth(users: Dict[str, Union[str, bytes]]) -> Callable:
    """
    @param users: maps user names to passwords.
    @return: a password callback accepting any user of C{users} with their
        password.  Other attempts raise L{AuthenticationFailed}.
    """
    expected = {
        name: secret.encode("utf-8") if isinstance(secret, str) else secret
        for name, secret in users.items()
    }

    def check(username: str, password: bytes) -> bool:
        secret = expected.get(username)
        if secret is None or not hmac.compare_digest(secret, password):
            raise AuthenticationFailed("authentication failed")
        return True

    return check


def _checkResult(result, avatarId):
    if not result:
        raise AuthenticationFailed("authentication failed")
    return avatarId


@implementer(ICredentialsChecker)
class PasswordCallbackChecker:
    """
    Check passwords with a L{ServerConfig.passwordCallback}.
    """

    credentialInterfaces = (IUsernamePassword,)

    def __init__(self, callback: Callable) -> None:
        self._callback = callback

    def requestAvatarId(self, credentials):
        username = credentials.username.decode("utf-8", "replace")
        d = defer.maybeDeferred(self._callback, username, credentials.password)
        d.addCallback(_checkResult, credentials.username)
        return d


@implementer(ICredentialsChecker)
class PublicKeyCallbackChecker:
    """
    Check public keys with a L{ServerConfig.publicKeyCallback}, then verify
    the client's signature the way
    L{twisted.conch.checkers.SSHPublicKeyChecker} does.
    """

    credentialInterfaces = (ISSHPrivateKey,)

    def __init__(self, callback: Callable) -> None:
        self._callback = callback

    def requestAvatarId(self, credentials):
        d = defer.maybeDeferred(Key.fromString, credentials.blob)
        d.addCallback(self._checkKey, credentials)
        d.addCallback(self._verifyKey, credentials)
        return d

    def _checkKey(self, pubKey, credentials):
        username = credentials.username.decode("utf-8", "replace")
        d = defer.maybeDeferred(self._callback, username, pubKey)
        d.addCallback(_checkResult, pubKey)
        return d

    def _verifyKey(self, pubKey, credentials):
        if not credentials.signature:
            # The client asks whether this key would do before signing.
            raise ValidPublicKey()
        if pubKey.verify(credentials.signature, credentials.sigData):
            return credentials.username
        raise AuthenticationFailed("key signature invalid")


class SessionState(Enum):
    """
    Where a connection is in its life.
    """

    NEW = "new"
    HANDSHAKING = "handshaking"
    AUTHENTICATED = "authenticated"
    CHANNEL_OPEN = "channel open"
    SFTP_ACTIVE = "sftp active"
    CLOSED = "closed"


class SFTPServerTransport(SSHServerTransport):
    """
    An L{SSHServerTransport} that tracks and logs its L{SessionState}.
    """

    state = SessionState.NEW

    def transition(self, state: SessionState) -> None:
        if self.state is SessionState.CLOSED:
            return
        _log.info(
            "{peer} session {old} -> {new}",
            peer=self.transport.getPeer() if self.transport else None,
            old=self.state.value,
            new=state.value,
        )
        self.state = state

    def connectionMade(self):
        self.transition(SessionState.HANDSHAKING)
        SSHServerTransport.connectionMade(self)

    def setService(self, service):
        SSHServerTransport.setService(self, service)
        if service.name == b"ssh-connection":
            self.transition(SessionState.AUTHENTICATED)

    def connectionLost(self, reason):
        SSHServerTransport.connectionLost(self, reason)
        _log.info(
            "{peer} connection closed: {reason}",
            peer=self.transport.getPeer() if self.transport else None,
            reason=reason.getErrorMessage(),
        )
        self.transition(SessionState.CLOSED)


class SFTPUserAuthServer(SSHUserAuthServer):
    """
    User authentication taking its limits and clock from the factory, with
    the C{none} method mapped to anonymous logins.
    """

    interfaceToMethod = dict(SSHUserAuthServer.interfaceToMethod)
    interfaceToMethod[IAnonymous] = b"none"

    @property
    def attemptsBeforeDisconnect(self):
        # Conch disconnects once failures exceed this, not reach it.
        return self.transport.factory.config.maxAuthTries - 1

    @property
    def clock(self):
        return self.transport.factory.reactor

    def auth_none(self, packet):
        return self.portal.login(Anonymous(), None, IConchUser)


class SFTPSessionChannel(SSHChannel):
    """
    A session channel that only accepts the C{sftp} subsystem.  Requests
    for shells, commands or terminals are refused.

    @ivar server: the L{filetransfer.FileTransferServer} speaking over this
        channel, once the subsystem was started.
    """

    name = b"session"
    server = None

    def _setState(self, state):
        transport = self.conn.transport
        if isinstance(transport, SFTPServerTransport):
            transport.transition(state)

    def channelOpen(self, specificData):
        self._setState(SessionState.CHANNEL_OPEN)

    def request_subsystem(self, data):
        subsystem, ignored = common.getNS(data)
        if subsystem != b"sftp" or self.server is not None:
            _log.info("Refused subsystem {subsystem!r}", subsystem=subsystem)
            return 0
        self.server = filetransfer.FileTransferServer(avatar=self.avatar)
        self.server.makeConnection(self)
        self._setState(SessionState.SFTP_ACTIVE)
        return 1

    def dataReceived(self, data):
        if self.server is not None:
            self.server.dataReceived(data)

    def eofReceived(self):
        self.loseConnection()

    def closed(self):
        if self.server is not None:
            server, self.server = self.server, None
            server.connectionLost(Failure(ConnectionDone("channel closed")))


class FilesystemUser(ConchUser):
    """
    The avatar of an authenticated client.

    @ivar username: the avatar ID the client logged in as.
    @ivar handler: the L{FilesystemHandler} all of the server's sessions
        share.
    """

    def __init__(self, username: str, handler: FilesystemHandler) -> None:
        ConchUser.__init__(self)
        self.username = username
        self.handler = handler
        self.channelLookup[b"session"] = SFTPSessionChannel

    def logout(self):
        _log.info("{username} logged out", username=self.username)


components.registerAdapter(SFTPServerForFilesystem, FilesystemUser, ISFTPServer)


@implementer(IRealm)
class FilesystemRealm:
    """
    Hand every authenticated user a L{FilesystemUser} over one shared
    handler.
    """

    def __init__(self, handler: FilesystemHandler) -> None:
        self.handler = handler

    def requestAvatar(self, avatarId, mind, *interfaces):
        if IConchUser not in interfaces:
            raise NotImplementedError(interfaces)
        if isinstance(avatarId, bytes):
            username = avatarId.decode("utf-8", "replace")
        else:
            username = "anonymous"
        _log.info("{username} logged in", username=username)
        user = FilesystemUser(username, self.handler)
        return IConchUser, user, user.logout


def _checkers(config: ServerConfig) -> List[ICredentialsChecker]:
    checkers: List[ICredentialsChecker] = []
    if config.passwordCallback is not None:
        checkers.append(PasswordCallbackChecker(config.passwordCallback))
    if config.publicKeyCallback is not None:
        checkers.append(PublicKeyCallbackChecker(config.publicKeyCallback))
    if config.noClientAuth:
        checkers.append(AllowAnonymousAccess())
    return checkers


class SFTPServerFactory(SSHFactory):
    """
    Serve C{filesystem} over SFTP.

    Each connection made through L{buildProtocol} runs the handshake,
    authentication, session channel and SFTP subsystem; every session goes
    through the same L{FilesystemHandler}.

    @ivar config: the L{ServerConfig}.
    @ivar handler: the L{FilesystemHandler}.
    @ivar reactor: used for authentication delays and timeouts.
    """

    protocol = SFTPServerTransport
    services = {
        b"ssh-userauth": SFTPUserAuthServer,
        b"ssh-connection": SSHConnection,
    }

    def __init__(self, filesystem, config: ServerConfig, reactor=None) -> None:
        config.validate()
        self.filesystem = filesystem
        self.config = config
        self.reactor = maybeGlobalReactor(reactor)
        self.handler = FilesystemHandler(filesystem)
        self.privateKeys = {key.sshType(): key for key in config.hostKeys}
        self.publicKeys = {
            keyType: key.public() for keyType, key in self.privateKeys.items()
        }
        self.portal = Portal(FilesystemRealm(self.handler), _checkers(config))

    def buildProtocol(self, addr):
        transport = SSHFactory.buildProtocol(self, addr)
        transport.ourVersionString = self.config.serverVersion
        return transport

    def listen(self, endpoint) -> defer.Deferred:
        """
        Start accepting connections on C{endpoint}.  Stop with the returned
        port's C{stopListening}; sessions already running carry on.

        @return: a L{defer.Deferred} firing with the
            L{twisted.internet.interfaces.IListeningPort}, or failing if
            listening failed.
        """
        d = endpoint.listen(self)
        d.addCallback(self._listening)
        return d

    def _listening(self, port):
        _log.info("SFTP server listening on {address}", address=port.getHost())
        return port
