"""
A session is one logical connection to the scanner function of a device.

The session owns a connected UDP socket and the sequence counter. Each request carries the
next sequence number and completes with the first response that echoes it; anything else
arriving on the socket in the meantime is dropped.
"""
import asyncio
import logging
from enum import Enum

from scanbutton.protocol.packet import BJNP_PORT, MAX_SEQUENCE, Command, DecodeError, decode, decode_header, \
    encode, hexdump
from scanbutton.protocol.payloads import payload_codecs

logger = logging.getLogger(__name__)

# level used to dump every datagram sent and received
TRACE = 5


class ConnectError(IOError):
    """ The session could not be opened: the address did not resolve or the socket could not be set up. """


class RequestError(IOError):
    """ A request did not produce a valid response. """


class RequestTimeoutError(RequestError):
    """ No response with the request's sequence number arrived in time. """


class RequestDecodeError(RequestError):
    """ The response carried the request's sequence number but could not be decoded. """


class RequestRejectedError(RequestError):
    """ The device answered with an error code and no payload. """

    def __init__(self, message, error_code=None):
        super().__init__(message)
        self.error_code = error_code


class RequestIOError(RequestError):
    """ The request could not be sent or the socket failed while waiting, or the session is closed. """


class SessionState(Enum):
    CLOSED = 'closed'
    OPEN = 'open'


def format_address(address):
    """
    >>> format_address(('10.0.0.5', 8612))
    '10.0.0.5:8612'
    >>> format_address(('fe80::1', 8612, 0, 0))
    '[fe80::1]:8612'
    """
    host, port = address[:2]
    if ':' in host:
        return '[%s]:%d' % (host, port)
    return '%s:%d' % (host, port)


class DatagramConduit(asyncio.DatagramProtocol):
    """
    Queues what arrives on the socket, so that a single reader can consume it.
    Socket errors are queued in place of a datagram.
    """

    def __init__(self):
        self.transport = None
        self.received = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.received.put_nowait((data, addr))

    def error_received(self, exc):
        self.received.put_nowait((exc, None))

    def connection_lost(self, exc):
        self.received.put_nowait((exc or ConnectionAbortedError("socket closed"), None))


async def open_session(address, token=None, codecs=payload_codecs, log=logger):
    """
    Opens a session to a device.
    :param address: (host, port). The host may be a name or an IPv4 or IPv6 address.
    :param token: the CancellationToken that aborts requests on shutdown
    :raises ConnectError: when the address cannot be resolved or the socket cannot be created and connected.
    """
    if token is not None:
        token.check()
    loop = asyncio.get_running_loop()
    host, port = address[:2]
    try:
        transport, conduit = await loop.create_datagram_endpoint(DatagramConduit, remote_addr=(host, port))
    except (OSError, ValueError) as e:
        raise ConnectError("unable to connect to %s: %s" % (format_address(address), e)) from e
    peer = transport.get_extra_info('peername') or (host, port)
    log.debug("opened session to %s" % format_address(peer))
    return Session(peer, transport, conduit, token, codecs, log)


class Session:
    """
    Sends requests to one device and correlates the responses by sequence number.
    Only one request may be in flight at a time.
    """

    def __init__(self, address, transport, conduit: DatagramConduit, token=None, codecs=payload_codecs, log=logger):
        self.address = address
        self.token = token
        self.codecs = codecs
        self.log = log
        self._transport = transport
        self._conduit = conduit
        self._sequence = 0
        self._in_flight = False
        self.state = SessionState.OPEN

    @property
    def is_open(self):
        return self.state is SessionState.OPEN

    @property
    def next_sequence(self):
        """ the sequence number the next request will carry """
        return self._sequence

    def _allocate_sequence(self):
        sequence = self._sequence
        self._sequence = (sequence + 1) % (MAX_SEQUENCE + 1)
        return sequence

    async def request(self, command: Command, payload=None, timeout=5):
        """
        Sends a request and waits for the matching response.
        :param command: the request command. The response must be its response command.
        :param payload: the payload value, encoded with the command's payload codec.
        :param timeout: seconds to wait for the response.
        :return: a tuple (response command, decoded response payload)
        :raises RequestError: when no valid response arrives. See the subclasses.
        :raises ShutdownRequested: when the cancellation token is set while waiting.
        """
        if not self.is_open:
            raise RequestIOError("session to %s is closed" % format_address(self.address))
        if self._in_flight:
            raise RuntimeError("a request to %s is already in flight" % format_address(self.address))
        self._in_flight = True
        try:
            sequence = self._allocate_sequence()
            data = encode(command, sequence, self.codecs.encode(command, payload))
            self._discard_pending()
            self._trace("sending %s sequence=%d to %s", command.name, sequence, data)
            try:
                self._transport.sendto(data)
            except OSError as e:
                raise RequestIOError("unable to send %s to %s: %s"
                                     % (command.name, format_address(self.address), e)) from e
            return await self._await_response(command, sequence, timeout)
        finally:
            self._in_flight = False

    async def _await_response(self, command, sequence, timeout):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RequestTimeoutError("no response to %s sequence=%d from %s within %ss"
                                          % (command.name, sequence, format_address(self.address), timeout))
            try:
                item, _ = await self._receive(remaining)
            except asyncio.TimeoutError:
                continue
            if isinstance(item, Exception):
                raise RequestIOError("socket to %s failed: %s" % (format_address(self.address), item)) from item
            response = self._match(item, command.response, sequence)
            if response is not None:
                return response

    async def _receive(self, timeout):
        get = self._conduit.received.get()
        if self.token is not None:
            return await self.token.guard(get, timeout)
        return await asyncio.wait_for(get, timeout)

    def _match(self, data, expected: Command, sequence):
        """
        :return: (command, payload) when data is the response to the request with the given sequence,
            None when it is something else that should be ignored.
        """
        try:
            command, received_sequence, error, _, _ = decode_header(data)
        except DecodeError as e:
            self.log.debug("dropping datagram from %s: %s" % (format_address(self.address), e))
            return None
        if received_sequence != sequence:
            self.log.debug("dropping %s sequence=%d, awaiting sequence=%d"
                           % (command.name, received_sequence, sequence))
            return None
        self._trace("received %s sequence=%d from %s", command.name, received_sequence, data)
        try:
            frame = decode(data)
        except DecodeError as e:
            raise RequestDecodeError("invalid response from %s: %s" % (format_address(self.address), e)) from e
        if frame.command is not expected:
            raise RequestDecodeError("expected %s, received %s" % (expected.name, frame.command.name))
        if frame.error and not frame.payload:
            raise RequestRejectedError("%s rejected with error code %#04x" % (expected.name, frame.error),
                                       frame.error)
        try:
            payload = self.codecs.decode(frame.command, frame.payload)
        except DecodeError as e:
            raise RequestDecodeError("invalid %s payload from %s: %s"
                                     % (frame.command.name, format_address(self.address), e)) from e
        return frame.command, payload

    def _discard_pending(self):
        """ drops responses to earlier requests that arrived after those requests gave up """
        queue = self._conduit.received
        while not queue.empty():
            item, _ = queue.get_nowait()
            if isinstance(item, Exception):
                self.log.debug("discarding earlier socket error: %s" % item)
            else:
                self.log.debug("discarding late datagram of %d bytes" % len(item))

    def _trace(self, message, name, sequence, data):
        if self.log.isEnabledFor(TRACE):
            self.log.log(TRACE, message + "\n%s", name, sequence, format_address(self.address), hexdump(data))

    def close(self):
        """ Closes the socket. Closing a closed session does nothing. """
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._transport.close()
        self.log.debug("closed session to %s" % format_address(self.address))

    @property
    def transport(self):
        return self._transport

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __str__(self):
        return "Session(%s, %s)" % (format_address(self.address), self.state.value)


def parse_address(text: str, default_port=BJNP_PORT):
    """
    Splits host[:port] into a (host, port) tuple. IPv6 addresses with a port are written [addr]:port.
    >>> parse_address('10.0.0.5')
    ('10.0.0.5', 8612)
    >>> parse_address('printer.local:9000')
    ('printer.local', 9000)
    >>> parse_address('[fe80::1]:8612')
    ('fe80::1', 8612)
    >>> parse_address('fe80::1')
    ('fe80::1', 8612)
    """
    text = text.strip()
    if not text:
        raise ValueError("empty address")
    if text.startswith('['):
        host, bracket, rest = text[1:].partition(']')
        if not bracket or (rest and not rest.startswith(':')):
            raise ValueError("invalid address: %s" % text)
        port = rest[1:] if rest else None
    elif text.count(':') == 1:
        host, port = text.split(':')
    else:
        host, port = text, None
    if not host:
        raise ValueError("missing host in address: %s" % text)
    if port is None:
        return host, default_port
    try:
        port = int(port)
    except ValueError:
        raise ValueError("invalid port in address: %s" % text) from None
    if not 0 < port < 65536:
        raise ValueError("port out of range in address: %s" % text)
    return host, port
