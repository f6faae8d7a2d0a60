# -*- test-case-name: sftpfs.test.test_connect -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Connecting to an SFTP server.

L{connect} dials, runs the SSH handshake and authentication, starts the
C{sftp} subsystem and returns an L{SFTPFilesystem}; the whole sequence is
retried with exponential back-off.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Union

import attr

from twisted.conch.client.knownhosts import KnownHostsFile
from twisted.conch.ssh import common, filetransfer
from twisted.conch.ssh.channel import SSHChannel
from twisted.conch.ssh.connection import SSHConnection
from twisted.conch.ssh.keys import Key
from twisted.conch.ssh.transport import SSHClientTransport
from twisted.conch.ssh.userauth import SSHUserAuthClient
from twisted.internet import defer, task
from twisted.internet.endpoints import TCP4ClientEndpoint
from twisted.internet.error import ConnectingCancelledError, ConnectionDone
from twisted.internet.protocol import Factory
from twisted.logger import Logger
from twisted.python.failure import Failure

from sftpfs._reactor import maybeGlobalReactor
from sftpfs.client import ConchSFTPClient
from sftpfs.error import AuthenticationFailed, ConnectError, HostKeyRejected
from sftpfs.filesystem import SFTPFilesystem

_log = Logger()

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


def acceptAnyHostKey(hostname: str, key: Key) -> bool:
    """
    Trust every host key.

    B{This is unsafe}: anyone able to intercept the connection can
    impersonate the server.  It is the default only so that the simplest
    configuration works; production code should pass L{fixedHostKey} or
    L{knownHostsKey} as C{hostKeyCallback}.
    """
    _log.warn(
        "Accepting host key {fingerprint} of {hostname} without verification",
        fingerprint=key.fingerprint(),
        hostname=hostname,
    )
    return True


def fixedHostKey(expected: Union[Key, bytes]) -> Callable[[str, Key], bool]:
    """
    @return: a host key callback trusting only C{expected}.
    """
    if not isinstance(expected, Key):
        expected = Key.fromString(expected)

    def verify(hostname: str, key: Key) -> bool:
        return key == expected

    return verify


def knownHostsKey(knownHosts: KnownHostsFile) -> Callable[[str, Key], bool]:
    """
    @return: a host key callback trusting the keys recorded for the host in
        C{knownHosts}.  Unknown hosts are rejected, and a changed key fails
        with L{twisted.conch.error.HostKeyChanged}.
    """

    def verify(hostname: str, key: Key) -> bool:
        return knownHosts.hasHostKey(hostname.encode("ascii"), key)

    return verify


@attr.s(auto_attribs=True)
class ClientConfig:
    """
    Where and how to connect.

    L{None} stands for the module defaults: a 30 second timeout per attempt,
    3 retries, a 1 second initial retry delay and L{acceptAnyHostKey}.

    @ivar password: the password, if authenticating with one.
    @ivar key: a private key, as a L{Key} or in a format L{Key.fromString}
        reads.  Used instead of C{password} when both are given.
    @ivar hostKeyCallback: called with the host name and the server's L{Key};
        returns a boolean, or a L{defer.Deferred} firing with one.
    @ivar maxRetries: attempts made after the first one fails.
    @ivar retryDelay: seconds to wait after the first failure; doubled after
        each further one.
    """

    host: str
    user: str
    password: Optional[Union[str, bytes]] = None
    key: Optional[Union[Key, bytes]] = None
    port: int = 22
    timeout: Optional[float] = None
    hostKeyCallback: Optional[Callable] = None
    maxRetries: Optional[int] = None
    retryDelay: Optional[float] = None

    def withDefaults(self) -> "ClientConfig":
        """
        @return: a copy with every unset value replaced by its default.
        @raise ValueError: if no credentials are configured or a value is out
            of range.
        """
        if self.password is None and self.key is None:
            raise ValueError("a password or a key is required")
        config = attr.evolve(
            self,
            timeout=DEFAULT_TIMEOUT if self.timeout is None else self.timeout,
            hostKeyCallback=self.hostKeyCallback or acceptAnyHostKey,
            maxRetries=(
                DEFAULT_MAX_RETRIES if self.maxRetries is None else self.maxRetries
            ),
            retryDelay=(
                DEFAULT_RETRY_DELAY if self.retryDelay is None else self.retryDelay
            ),
        )
        if config.maxRetries < 0:
            raise ValueError("maxRetries must not be negative")
        if config.retryDelay <= 0 or config.timeout <= 0:
            raise ValueError("timeout and retryDelay must be positive")
        return config


class _UserAuth(SSHUserAuthClient):
    """
    Offer either one private key or one password, each only once.
    """

    password: Optional[bytes] = None
    key: Optional[Key] = None

    def getPublicKey(self):
        if self.key is None:
            return None
        key, self._offered = self.key, self.key
        self.key = None
        return key.public()

    def getPrivateKey(self):
        return defer.succeed(self._offered)

    def getPassword(self, prompt=None):
        if self.password is None:
            return None
        password, self.password = self.password, None
        return defer.succeed(password)

    def ssh_USERAUTH_SUCCESS(self, packet):
        self.transport._state = "CHANNELLING"
        return SSHUserAuthClient.ssh_USERAUTH_SUCCESS(self, packet)


class _SFTPChannel(SSHChannel):
    """
    A session channel running the C{sftp} subsystem.
    """

    name = b"session"
    sftp = None

    def channelOpen(self, specificData):
        d = self.conn.sendRequest(
            self, b"subsystem", common.NS(b"sftp"), wantReply=True
        )
        d.addCallbacks(self._subsystemStarted, self._subsystemRefused)

    def _subsystemStarted(self, ignored):
        self.sftp = filetransfer.FileTransferClient()
        self.sftp.makeConnection(self)
        self.conn.transport.sftpReady(self.sftp)

    def _subsystemRefused(self, reason):
        self.conn.transport.sftpFailed(reason)

    def openFailed(self, reason):
        self.conn.transport.sftpFailed(Failure(reason))

    def dataReceived(self, data):
        if self.sftp is not None:
            self.sftp.dataReceived(data)

    def closed(self):
        if self.sftp is not None:
            sftp, self.sftp = self.sftp, None
            sftp.connectionLost(Failure(ConnectionDone("channel closed")))
        if not self.conn.transport._lost:
            self.conn.transport.loseConnection()


class _SFTPConnection(SSHConnection):
    def serviceStarted(self):
        SSHConnection.serviceStarted(self)
        self.openChannel(_SFTPChannel(conn=self))


class _SFTPClientTransport(SSHClientTransport):
    """
    The client side of one connection attempt.

    C{_state} moves through C{STARTING}, C{SECURING}, C{AUTHENTICATING},
    C{CHANNELLING} and C{RUNNING}; it decides what a lost connection is
    reported as.
    """

    _state = "STARTING"
    _hostKeyFailure = None
    _lost = False

    def connectionMade(self):
        self._lostWaiters: List[defer.Deferred] = []
        SSHClientTransport.connectionMade(self)

    def verifyHostKey(self, hostKey, fingerprint):
        self._state = "SECURING"
        key = Key.fromString(hostKey)
        d = defer.maybeDeferred(self.factory.hostKeyCallback, self.factory.host, key)
        d.addCallback(self._checkHostKey, key)
        d.addErrback(self._saveHostKeyFailure)
        return d

    def _checkHostKey(self, accepted, key):
        if not accepted:
            raise HostKeyRejected(
                f"host key {key.fingerprint()} of {self.factory.host} rejected"
            )
        return accepted

    def _saveHostKeyFailure(self, reason):
        self._hostKeyFailure = reason
        return reason

    def connectionSecure(self):
        self._state = "AUTHENTICATING"
        userauth = _UserAuth(self.factory.user, _SFTPConnection())
        if self.factory.key is not None:
            userauth.key = self.factory.key
        else:
            userauth.password = self.factory.password
        self.requestService(userauth)

    def sftpReady(self, sftp):
        if self.factory.ready.called:
            self.loseConnection()
            return
        self._state = "RUNNING"
        self.factory.ready.callback(ConchSFTPClient(sftp, self.disconnect))

    def sftpFailed(self, reason):
        if not self.factory.ready.called:
            self.factory.ready.errback(reason)
        self.loseConnection()

    def disconnect(self) -> defer.Deferred:
        """
        Close the connection.

        @return: a L{defer.Deferred} firing once it is closed.
        """
        d = defer.Deferred()
        if self._lost:
            d.callback(None)
        else:
            self._lostWaiters.append(d)
            self.loseConnection()
        return d

    def connectionLost(self, reason):
        self._lost = True
        SSHClientTransport.connectionLost(self, reason)
        waiters, self._lostWaiters = self._lostWaiters, []
        for waiter in waiters:
            waiter.callback(None)
        if self._state == "RUNNING" or self.factory.ready.called:
            return
        if self._state == "SECURING" and self._hostKeyFailure is not None:
            reason = self._hostKeyFailure
        elif self._state == "AUTHENTICATING":
            reason = Failure(
                AuthenticationFailed(f"authentication failed for {self.factory.user!r}")
            )
        self.factory.ready.errback(reason)


class _SFTPClientFactory(Factory):
    """
    Builds the transport for one attempt.

    @ivar ready: fires with an L{ConchSFTPClient} once the subsystem runs,
        or fails with the reason the attempt did not get there.
    """

    protocol = _SFTPClientTransport

    def __init__(self, config: ClientConfig, key: Optional[Key]) -> None:
        self.host = config.host
        self.user = config.user.encode("utf-8")
        password = config.password
        if isinstance(password, str):
            password = password.encode("utf-8")
        self.password = password
        self.key = key
        self.hostKeyCallback = config.hostKeyCallback
        self.ready = defer.Deferred(self._cancel)
        self.transportProtocol = None

    def buildProtocol(self, addr):
        self.transportProtocol = Factory.buildProtocol(self, addr)
        return self.transportProtocol

    def _cancel(self, ready):
        if self.transportProtocol is not None:
            self.transportProtocol.transport.loseConnection()


def _connectOnce(
    reactor, config: ClientConfig, key: Optional[Key]
) -> defer.Deferred:
    factory = _SFTPClientFactory(config, key)
    endpoint = TCP4ClientEndpoint(
        reactor, config.host, config.port, timeout=config.timeout
    )
    d = endpoint.connect(factory)
    d.addErrback(_connectingCancelled)
    d.addCallback(lambda protocol: factory.ready)
    d.addTimeout(config.timeout, reactor, onTimeoutCancel=_timedOut)
    return d


def _connectingCancelled(reason):
    reason.trap(ConnectingCancelledError)
    raise defer.CancelledError()


def _timedOut(result, timeout):
    raise defer.TimeoutError(f"no SFTP session after {timeout} seconds")


@defer.inlineCallbacks
def connect(config: ClientConfig, reactor=None):
    """
    Connect to an SFTP server, retrying failed attempts.

    Attempt C{k} (counting from 0) that fails is followed, if attempts
    remain, by a pause of C{retryDelay * 2 ** k} seconds.  Each attempt is
    abandoned after C{timeout} seconds.

    @return: a L{defer.Deferred} firing with an L{SFTPFilesystem}, or failing
        with L{ConnectError} chained to the last attempt's error.
    """
    reactor = maybeGlobalReactor(reactor)
    config = config.withDefaults()
    key = config.key
    if key is not None and not isinstance(key, Key):
        key = Key.fromString(key)
    attempts = config.maxRetries + 1
    lastError: Exception = ConnectionDone()
    for attempt in range(attempts):
        try:
            client = yield _connectOnce(reactor, config, key)
        except defer.CancelledError:
            raise
        except Exception as e:
            lastError = e
        else:
            _log.info(
                "Connected to {host}:{port} as {user}",
                host=config.host,
                port=config.port,
                user=config.user,
            )
            return SFTPFilesystem(client)
        if attempt + 1 < attempts:
            delay = config.retryDelay * 2**attempt
            _log.warn(
                "Attempt {attempt} of {attempts} to reach {host} failed: "
                "{error}; retrying in {delay} seconds",
                attempt=attempt + 1,
                attempts=attempts,
                host=config.host,
                error=lastError,
                delay=delay,
            )
            yield task.deferLater(reactor, delay, lambda: None)
    raise ConnectError(attempts, lastError) from lastError


def dial(host: str, user: str, password: Union[str, bytes], reactor=None):
    """
    Connect with a password and the default settings.  C{host} may end in
    C{:port}.
    """
    host, port = _splitHost(host)
    return connect(
        ClientConfig(host=host, port=port, user=user, password=password), reactor
    )


def dialWithKey(host: str, user: str, key: Union[Key, bytes], reactor=None):
    """
    Connect with a private key and the default settings.  C{host} may end
    in C{:port}.
    """
    host, port = _splitHost(host)
    return connect(ClientConfig(host=host, port=port, user=user, key=key), reactor)


def _splitHost(host: str):
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit() and "]" not in port:
        return name.strip("[]"), int(port)
    return host, 22
