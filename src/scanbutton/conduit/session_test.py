import asyncio
import socket
import sys
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, Mock, patch

from hamcrest import assert_that, calling, contains_exactly, equal_to, instance_of, is_, raises

from scanbutton.conduit.session import ConnectError, RequestDecodeError, RequestIOError, RequestRejectedError, \
    RequestTimeoutError, SessionState, format_address, open_session, parse_address
from scanbutton.protocol.packet import MAX_SEQUENCE, Command, decode, encode
from scanbutton.protocol.payloads import DiscoverResponse, DiscoverResponseCodec
from scanbutton.support.cancellation import CancellationToken, ShutdownRequested


def debug_timeout(value):
    """
    Replaces the timeout value with a very large one if the tests are running under a debugger.
    This stops the test from timing out while sitting on a breakpoint.
    """
    return value if sys.gettrace() is None else 100000


MAC = bytes([0x00, 0x1e, 0x8f, 0x01, 0x02, 0x03])


def discover_ack(sequence, ip='10.0.0.5'):
    return encode(Command.DISCOVER_ACK, sequence, DiscoverResponseCodec().encode(DiscoverResponse(MAC, ip)))


class FakeDevice(asyncio.DatagramProtocol):
    """
    A device on the loopback interface. Each request received is decoded and passed to respond(),
    which returns the datagrams to send back.
    """

    def __init__(self, respond):
        self.respond = respond
        self.requests = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        frame = decode(data)
        self.requests.append(frame)
        for reply in self.respond(frame) or ():
            self.transport.sendto(reply, addr)

    @property
    def address(self):
        return self.transport.get_extra_info('sockname')[:2]

    @property
    def sequences(self):
        return [frame.sequence for frame in self.requests]


async def start_device(respond):
    loop = asyncio.get_running_loop()
    _, device = await loop.create_datagram_endpoint(lambda: FakeDevice(respond), local_addr=('127.0.0.1', 0))
    return device


def answer_discover(frame):
    return [discover_ack(frame.sequence)]


class SessionTest(IsolatedAsyncioTestCase):

    async def open(self, respond, token=None):
        self.device = await start_device(respond)
        self.addCleanup(self.device.transport.close)
        session = await open_session(self.device.address, token)
        self.addCleanup(session.close)
        return session

    async def test_request_returns_decoded_response(self):
        session = await self.open(answer_discover)
        result = await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(result, is_((Command.DISCOVER_ACK, DiscoverResponse(MAC, '10.0.0.5'))))

    async def test_sequence_starts_at_zero_and_increments(self):
        session = await self.open(answer_discover)
        for _ in range(3):
            await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(self.device.sequences, is_([0, 1, 2]))
        assert_that(session.next_sequence, is_(3))

    async def test_sequence_wraps_at_16_bits(self):
        session = await self.open(answer_discover)
        session._sequence = MAX_SEQUENCE
        await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(self.device.sequences, is_([MAX_SEQUENCE]))
        assert_that(session.next_sequence, is_(0))

    async def test_response_is_correlated_by_sequence(self):
        def respond(frame):
            if frame.sequence < 5:
                return answer_discover(frame)
            return [discover_ack(3, '10.0.0.3'), discover_ack(7, '10.0.0.7'), discover_ack(5, '10.0.0.55')]

        session = await self.open(respond)
        for _ in range(5):
            await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        command, payload = await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(self.device.sequences[-1], is_(5))
        assert_that(str(payload.ip), is_('10.0.0.55'))

    async def test_late_response_to_earlier_request_is_ignored(self):
        def respond(frame):
            if frame.sequence == 0:
                return []
            return [discover_ack(0, '10.0.0.1'), discover_ack(frame.sequence, '10.0.0.2')]

        session = await self.open(respond)
        assert_that(await calling_async(session.request(Command.DISCOVER, timeout=0.2)),
                    instance_of(RequestTimeoutError))
        command, payload = await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(str(payload.ip), is_('10.0.0.2'))

    async def test_undecodable_datagrams_are_dropped(self):
        def respond(frame):
            return [b'garbage', b'BJNP\x09\x09', encode(Command.DISCOVER_ACK, frame.sequence)[:10],
                    discover_ack(frame.sequence)]

        session = await self.open(respond)
        command, payload = await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(command, is_(Command.DISCOVER_ACK))

    async def test_no_response_times_out(self):
        session = await self.open(lambda frame: [])
        error = await calling_async(session.request(Command.DISCOVER, timeout=0.2))
        assert_that(error, instance_of(RequestTimeoutError))

    async def test_unexpected_response_kind_is_a_decode_error(self):
        session = await self.open(lambda frame: [encode(Command.IDENTITY, frame.sequence, b'\x00\x02')])
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RequestDecodeError))

    async def test_invalid_payload_is_a_decode_error(self):
        session = await self.open(lambda frame: [encode(Command.DISCOVER_ACK, frame.sequence, b'\x00\x01')])
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RequestDecodeError))

    async def test_error_code_without_payload_is_rejected(self):
        session = await self.open(lambda frame: [encode(Command.DISCOVER_ACK, frame.sequence, error=0x06)])
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RequestRejectedError))
        assert_that(error.error_code, is_(0x06))

    async def test_socket_error_while_waiting(self):
        def respond(frame):
            session._conduit.error_received(ConnectionRefusedError(111, 'Connection refused'))

        session = await self.open(respond)
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RequestIOError))

    async def test_request_on_closed_session(self):
        session = await self.open(answer_discover)
        session.close()
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RequestIOError))
        assert_that(self.device.requests, is_([]))

    async def test_close_is_idempotent_and_releases_the_socket(self):
        session = await self.open(answer_discover)
        session.close()
        session.close()
        assert_that(session.state, is_(SessionState.CLOSED))
        assert_that(session.transport.is_closing(), is_(True))

    async def test_context_manager_closes(self):
        device = await start_device(answer_discover)
        self.addCleanup(device.transport.close)
        async with await open_session(device.address) as session:
            await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        assert_that(session.is_open, is_(False))

    async def test_one_request_in_flight(self):
        session = await self.open(lambda frame: [])
        first = asyncio.ensure_future(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        await asyncio.sleep(0.01)
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(2)))
        assert_that(error, instance_of(RuntimeError))
        first.cancel()
        await asyncio.gather(first, return_exceptions=True)

    async def test_shutdown_aborts_pending_request(self):
        token = CancellationToken()
        session = await self.open(lambda frame: [], token)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel)
        start = loop.time()
        error = await calling_async(session.request(Command.DISCOVER, timeout=debug_timeout(10)))
        assert_that(error, instance_of(ShutdownRequested))
        assert_that(loop.time() - start < 1, is_(True))

    async def test_unresolvable_address_is_a_connect_error(self):
        loop = asyncio.get_running_loop()
        failure = AsyncMock(side_effect=socket.gaierror(-2, 'Name or service not known'))
        with patch.object(loop, 'create_datagram_endpoint', failure):
            error = await calling_async(open_session(('no-such-printer', 8612)))
        assert_that(error, instance_of(ConnectError))

    async def test_open_after_shutdown(self):
        token = CancellationToken()
        token.cancel()
        error = await calling_async(open_session(('127.0.0.1', 8612), token))
        assert_that(error, instance_of(ShutdownRequested))

    async def test_frames_are_logged(self):
        log = Mock()
        log.isEnabledFor.return_value = True
        device = await start_device(answer_discover)
        self.addCleanup(device.transport.close)
        session = await open_session(device.address, log=log)
        await session.request(Command.DISCOVER, timeout=debug_timeout(2))
        session.close()
        assert_that(log.log.call_count, is_(2))


async def calling_async(awaitable):
    """ awaits and returns the exception raised, failing if there is none """
    try:
        await awaitable
    except Exception as e:
        return e
    raise AssertionError("expected an exception")


class AddressTest(TestCase):

    def test_host_only_uses_device_port(self):
        assert_that(parse_address('192.168.1.20'), is_(('192.168.1.20', 8612)))

    def test_host_and_port(self):
        assert_that(parse_address('scanner:1234'), is_(('scanner', 1234)))

    def test_ipv6(self):
        assert_that(parse_address('[::1]:1234'), is_(('::1', 1234)))
        assert_that(parse_address('[::1]'), is_(('::1', 8612)))
        assert_that(parse_address('::1'), is_(('::1', 8612)))

    def test_invalid(self):
        for text in ('', 'scanner:', 'scanner:abc', 'scanner:0', 'scanner:70000', '[::1', '[::1]x', ':80'):
            assert_that(calling(parse_address).with_args(text), raises(ValueError), text)

    def test_format(self):
        assert_that(format_address(('::1', 8612, 0, 0)), equal_to('[::1]:8612'))
        assert_that([format_address(a) for a in [('a', 1), ('b', 2)]], contains_exactly('a:1', 'b:2'))
