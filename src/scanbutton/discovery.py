"""
Finds devices on the local network.

A DISCOVER packet is broadcast from every local address. Each device that answers is recorded
once, with the quickest round trip seen, and asked for its IEEE 1284 device id while the
discovery window is still open.
"""
import asyncio
import ipaddress
import logging
import socket

from scanbutton.conduit.session import ConnectError, RequestError, format_address, open_session
from scanbutton.protocol.packet import BJNP_PORT, Command, DecodeError, decode, encode
from scanbutton.protocol.payloads import DeviceId, DiscoverResponse, payload_codecs
from scanbutton.support.cancellation import CancellationToken, ShutdownRequested
from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger(__name__)

IPV4_BROADCAST = '255.255.255.255'
IPV6_ALL_NODES = 'ff02::1'


class LocalAddress(CommonEqualityMixin, StringerMixin):
    """
    An address of this host to broadcast from.
    :param broadcast: the IPv4 directed broadcast address of the network, if known
    :param interface: the name of the network interface, used to scope IPv6 multicast
    """

    def __init__(self, ip, broadcast=None, interface=None):
        self.ip = ipaddress.ip_address(ip)
        self.broadcast = broadcast
        self.interface = interface

    @property
    def family(self):
        return socket.AF_INET6 if self.ip.version == 6 else socket.AF_INET

    def target(self, port=BJNP_PORT):
        """ where the discover packet is sent """
        if self.ip.version == 4:
            return self.broadcast or IPV4_BROADCAST, port
        return IPV6_ALL_NODES, port, 0, self._scope_id()

    def _scope_id(self):
        if self.ip.scope_id:
            return _interface_index(self.ip.scope_id)
        if self.interface:
            return _interface_index(self.interface)
        return 0


def _interface_index(name):
    if name.isdigit():
        return int(name)
    try:
        return socket.if_nametoindex(name)
    except OSError:
        return 0


class DeviceIdentity:
    """
    A device that answered discovery. Two identities are the same device when they have the same address.
    """

    def __init__(self, address, mac: bytes=None, ip=None, device_id: DeviceId=None):
        """
        :param address: (host, port) the device answered from
        :param ip: the IP address the device announced
        """
        self.address = tuple(address[:2])
        self.mac = mac
        self.ip = ip
        self.device_id = device_id

    @property
    def mac_address(self):
        return ':'.join('%02x' % b for b in self.mac) if self.mac else None

    @property
    def model(self):
        return self.device_id.model if self.device_id else None

    @property
    def capabilities(self):
        return self.device_id.capabilities if self.device_id else ()

    def __eq__(self, other):
        return isinstance(other, DeviceIdentity) and self.address == other.address

    def __hash__(self):
        return hash(self.address)

    def __str__(self):
        s = format_address(self.address)
        if self.mac:
            s += " mac=%s" % self.mac_address
        if self.model:
            s += " model=%s" % self.model
        return s

    __repr__ = __str__


class DiscoveryRecord(CommonEqualityMixin):
    """ A device found by discovery, with the round trip time of its quickest answer in seconds. """

    def __init__(self, identity: DeviceIdentity, latency):
        self.identity = identity
        self.latency = latency

    def __hash__(self):
        return hash(self.identity)

    def __str__(self):
        return "%s latency=%.1fms" % (self.identity, self.latency * 1000)


def merge(records: dict, record: DiscoveryRecord):
    """
    Adds a record to the records keyed by identity, keeping the lower latency when the device is
    already known. An equal latency keeps the existing record. The device id learnt so far is kept.
    :return: True if the device was not known before
    """
    existing = records.get(record.identity)
    if existing is None:
        records[record.identity] = record
        return True
    if record.latency < existing.latency:
        if record.identity.device_id is None:
            record.identity.device_id = existing.identity.device_id
        records[record.identity] = record
    return False


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """ Puts the answers received on one broadcasting socket on the shared queue. """

    def __init__(self, local: LocalAddress, queue: asyncio.Queue):
        self.local = local
        self.queue = queue
        self.transport = None
        self.sent_at = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.queue.put_nowait(('response', self.local, data, addr, asyncio.get_running_loop().time() - self.sent_at))

    def error_received(self, exc):
        self.queue.put_nowait(('error', self.local, exc))


class DeviceDiscovery:
    """
    One discovery run. The results are folded by the coroutine running run(); the sockets and
    the identity inquiries only put what they learn on the queue.
    """

    def __init__(self, local_addresses, window=5, inquire=True, token: CancellationToken=None, port=BJNP_PORT,
                 log=logger):
        self.local_addresses = list(local_addresses)
        self.window = window
        self.inquire = inquire
        self.token = token or CancellationToken()
        self.port = port
        self.log = log
        self.records = {}
        self._queue = asyncio.Queue()
        self._transports = []
        self._inquiries = set()

    async def run(self):
        """ :return: the set of DiscoveryRecords """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.window
        try:
            for local in self.local_addresses:
                await self._broadcast(local)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await self.token.guard(self._queue.get(), remaining)
                except asyncio.TimeoutError:
                    break
                self._fold(item, deadline - loop.time())
        except ShutdownRequested:
            self.log.info("discovery stopped early")
        finally:
            await self._stop()
        return set(self.records.values())

    async def _broadcast(self, local: LocalAddress):
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(local, self._queue), local_addr=(str(local.ip), 0), family=local.family,
                allow_broadcast=local.ip.version == 4)
        except OSError as e:
            self.log.warning("unable to broadcast from %s: %s" % (local.ip, e))
            return
        self._transports.append(transport)
        target = local.target(self.port)
        protocol.sent_at = loop.time()
        transport.sendto(encode(Command.DISCOVER, 0), target)
        self.log.debug("sent discover from %s to %s" % (local.ip, format_address(target)))

    def _fold(self, item, remaining):
        kind = item[0]
        if kind == 'response':
            _, local, data, addr, latency = item
            identity = self._identity(data, addr)
            if identity is not None and merge(self.records, DiscoveryRecord(identity, latency)):
                self.log.info("detected device at %s" % format_address(addr))
                if self.inquire:
                    self._start_inquiry(addr, remaining)
        elif kind == 'identity':
            _, address, device_id = item
            record = self.records.get(DeviceIdentity(address))
            if record is not None:
                record.identity.device_id = device_id
        else:
            _, local, error = item
            self.log.debug("socket bound to %s: %s" % (local.ip, error))

    def _identity(self, data, addr):
        try:
            frame = decode(data)
            if frame.command is not Command.DISCOVER_ACK:
                raise DecodeError("expected %s, got %s" % (Command.DISCOVER_ACK.name, frame.command.name))
            if frame.error and not frame.payload:
                raise DecodeError("error code %#04x" % frame.error)
            response = payload_codecs.decode(frame.command, frame.payload)   # type: DiscoverResponse
        except DecodeError as e:
            self.log.debug("dropping answer from %s: %s" % (format_address(addr), e))
            return None
        return DeviceIdentity(addr, response.mac, response.ip)

    def _start_inquiry(self, addr, timeout):
        task = asyncio.ensure_future(self._inquire(addr, timeout))
        self._inquiries.add(task)
        task.add_done_callback(self._inquiries.discard)

    async def _inquire(self, addr, timeout):
        try:
            async with await open_session(addr, self.token, log=self.log) as session:
                _, device_id = await session.request(Command.GET_ID, None, timeout)
        except (ConnectError, RequestError) as e:
            self.log.debug("no device id from %s: %s" % (format_address(addr), e))
            return
        except ShutdownRequested:
            return
        self._queue.put_nowait(('identity', addr, device_id))

    async def _stop(self):
        for transport in self._transports:
            transport.close()
        pending = list(self._inquiries)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        # identities that arrived with the last answers
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item[0] == 'identity':
                self._fold(item, 0)


async def discover(local_addresses, window=5, inquire=True, token: CancellationToken=None, port=BJNP_PORT,
                   log=logger):
    """
    Broadcasts from each local address and collects the devices that answer within window seconds.
    :param local_addresses: LocalAddress instances. Addresses that cannot be bound are logged and skipped.
    :param inquire: ask each device for its device id
    :return: a set of DiscoveryRecord, empty when nothing answered
    """
    return await DeviceDiscovery(local_addresses, window, inquire, token, port, log).run()
