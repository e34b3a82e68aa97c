"""
Payload codecs, one per command kind.

Each codec knows how to convert the payload of one command to and from bytes.
The codecs are looked up by command in PayloadCodecs, so a new command kind only needs
a new codec and a new entry in the dictionary.
"""
import ipaddress
import struct
from abc import abstractmethod
from datetime import datetime
from enum import IntEnum

from scanbutton.protocol.packet import Command, DecodeError
from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin

# the status bit set in a poll response when the scan button was pressed
BUTTON_PRESSED = 0x8000

HOST_LENGTH = 64
ELLIPSIS = '...'.encode('utf-16-be')


class PayloadError(DecodeError):
    """ The payload of a frame does not match the layout of its command. """


class Codec:
    """
    Knows how to convert a payload value to/from the on-wire data format.
    """

    @abstractmethod
    def encode(self, value) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def decode(self, data: bytes):
        """ decodes the payload bytes, raising PayloadError if they do not fit the layout """
        raise NotImplementedError

    @staticmethod
    def _unpack(layout: struct.Struct, data, offset=0, what='payload'):
        if len(data) < offset + layout.size:
            raise PayloadError("%s needs %d bytes, got %d" % (what, offset + layout.size, len(data)))
        return layout.unpack_from(data, offset)


class EmptyCodec(Codec):
    """ A payload with no content. Any bytes received are ignored. """

    def encode(self, value=None):
        return b''

    def decode(self, data):
        return None


def encode_host(name: str) -> bytes:
    """
    Encodes the host name shown on the device display: UTF-16BE, zero padded to 64 bytes.
    A longer name is cut on a character boundary and ends with '...'.

    >>> encode_host('ab')[:6]
    b'\\x00a\\x00b\\x00\\x00'
    >>> decode_host(encode_host('x' * 40))
    'xxxxxxxxxxxxxxxxxxxxxxxxxxxxx...'
    """
    chars = [c.encode('utf-16-be', 'surrogatepass') for c in name]
    data = b''.join(chars)
    if len(data) > HOST_LENGTH:
        limit = HOST_LENGTH - len(ELLIPSIS)
        kept = bytearray()
        for c in chars:
            if len(kept) + len(c) > limit:
                break
            kept += c
        data = bytes(kept) + ELLIPSIS
    return data.ljust(HOST_LENGTH, b'\0')


def decode_host(data: bytes) -> str:
    """ The host name may contain invalid code units, so decoding is lossy. """
    text = bytes(data).decode('utf-16-be', 'replace')
    return text.split('\0', 1)[0]


class DiscoverResponse(CommonEqualityMixin, StringerMixin):
    """ The hardware and network address a device announces in reply to a discover broadcast. """

    def __init__(self, mac: bytes, ip):
        self.mac = bytes(mac)
        self.ip = ipaddress.ip_address(ip)

    @property
    def mac_address(self):
        """
        >>> DiscoverResponse(bytes([0, 0x1e, 0x8f, 1, 2, 3]), '10.0.0.5').mac_address
        '00:1e:8f:01:02:03'
        """
        return ':'.join('%02x' % b for b in self.mac)


class DiscoverResponseCodec(Codec):
    """
    reserved (00 01 08 00), mac length (6 or 8), ip length (4 or 16), mac, ip
    """
    layout = struct.Struct('>4sBB')
    reserved = b'\x00\x01\x08\x00'

    def encode(self, value: DiscoverResponse):
        ip = value.ip.packed
        return self.layout.pack(self.reserved, len(value.mac), len(ip)) + value.mac + ip

    def decode(self, data):
        _, mac_len, ip_len = self._unpack(self.layout, data, what='discover response')
        if mac_len not in (6, 8):
            raise PayloadError("invalid MAC address size %d, can only be 6 or 8" % mac_len)
        if ip_len not in (4, 16):
            raise PayloadError("invalid IP address size %d, can only be 4 or 16" % ip_len)
        start = self.layout.size
        end = start + mac_len + ip_len
        if len(data) < end:
            raise PayloadError("discover response needs %d bytes, got %d" % (end, len(data)))
        mac = data[start:start + mac_len]
        ip = data[start + mac_len:end]
        return DiscoverResponse(mac, ipaddress.ip_address(bytes(ip)))


class DeviceId(CommonEqualityMixin):
    """
    The IEEE 1284 device id a device returns for GET_ID, such as
    MFG:Canon;CMD:MultiPass 2.1,IVEC;MDL:MX920 series;CLS:IMAGE;DES:Canon MX920 series;
    """

    def __init__(self, fields=None):
        self.fields = dict(fields or {})

    def get(self, key, default=None):
        return self.fields.get(key, default)

    @property
    def manufacturer(self):
        return self.fields.get('MFG')

    @property
    def model(self):
        return self.fields.get('MDL') or self.fields.get('DES')

    @property
    def capabilities(self):
        """
        The command sets and device class advertised by the device.
        >>> DeviceId({'CMD': 'MultiPass 2.1,IVEC', 'CLS': 'IMAGE'}).capabilities
        ('IMAGE', 'MultiPass 2.1', 'IVEC')
        """
        flags = [self.fields['CLS']] if self.fields.get('CLS') else []
        flags += [c.strip() for c in self.fields.get('CMD', '').split(',') if c.strip()]
        return tuple(flags)

    def __str__(self):
        return ''.join('%s:%s;' % (k, v) for k, v in self.fields.items())


class DeviceIdCodec(Codec):
    """ u16 length (including the length itself) followed by KEY:VALUE; pairs """
    layout = struct.Struct('>H')

    def encode(self, value: DeviceId):
        text = str(value).encode('utf-8')
        return self.layout.pack(len(text) + self.layout.size) + text

    def decode(self, data):
        length, = self._unpack(self.layout, data, what='device id')
        if length < self.layout.size:
            raise PayloadError("invalid length of device id %d, should always be >= 2" % length)
        if len(data) < length:
            raise PayloadError("device id needs %d bytes, got %d" % (length, len(data)))
        try:
            text = bytes(data[self.layout.size:length]).decode('utf-8')
        except UnicodeDecodeError as e:
            raise PayloadError("device id is not valid UTF-8: %s" % e) from e
        fields = {}
        for item in text.split(';'):
            key, sep, value = item.partition(':')
            if sep:
                fields[key.strip()] = value
        return DeviceId(fields)


class PollType(IntEnum):
    EMPTY = 0x00
    HOST_ONLY = 0x01
    FULL = 0x02
    RESET = 0x05


class PollRequest(CommonEqualityMixin, StringerMixin):
    """
    The POLL_BUTTON request. Which attributes are used depends on the poll type:
    HOST_ONLY registers the host and asks for a session id, FULL asks if a button was pressed,
    RESET acknowledges a button press.
    """

    def __init__(self, poll_type: PollType, host=None, session_id=None, action_id=None, timestamp=None):
        self.poll_type = PollType(poll_type)
        self.host = host
        self.session_id = session_id
        self.action_id = action_id
        self.timestamp = timestamp

    @classmethod
    def empty(cls):
        return cls(PollType.EMPTY)

    @classmethod
    def host_only(cls, host):
        return cls(PollType.HOST_ONLY, host=host)

    @classmethod
    def full(cls, session_id, host, timestamp: datetime):
        return cls(PollType.FULL, host=host, session_id=session_id, timestamp=timestamp.replace(microsecond=0))

    @classmethod
    def reset(cls, session_id, host, action_id):
        return cls(PollType.RESET, host=host, session_id=session_id, action_id=action_id)


class PollLayout:
    """ The body of one poll type, following the u16 poll type. """
    body = struct.Struct('')

    def encode(self, request: PollRequest) -> bytes:
        return self.body.pack()

    def decode(self, poll_type, data, offset) -> PollRequest:
        Codec._unpack(self.body, data, offset, 'poll request')
        return PollRequest(poll_type)


class EmptyPollLayout(PollLayout):
    body = struct.Struct('>78x')


class HostOnlyPollLayout(PollLayout):
    body = struct.Struct('>6x64s4x')

    def encode(self, request):
        return self.body.pack(encode_host(request.host))

    def decode(self, poll_type, data, offset):
        host, = Codec._unpack(self.body, data, offset, 'poll request')
        return PollRequest(poll_type, host=decode_host(host))


class FullPollLayout(PollLayout):
    body = struct.Struct('>2xI64s4s20x4s14s2x')
    timestamp_format = '%Y%m%d%H%M%S'

    def encode(self, request):
        timestamp = request.timestamp.strftime(self.timestamp_format).encode('ascii')
        return self.body.pack(request.session_id, encode_host(request.host),
                              b'\x00\x00\x00\x14', b'\x00\x00\x00\x10', timestamp)

    def decode(self, poll_type, data, offset):
        session_id, host, _, _, timestamp = Codec._unpack(self.body, data, offset, 'poll request')
        try:
            timestamp = datetime.strptime(timestamp.decode('ascii'), self.timestamp_format)
        except ValueError as e:
            raise PayloadError("invalid timestamp %r" % timestamp) from e
        return PollRequest(poll_type, host=decode_host(host), session_id=session_id, timestamp=timestamp)


class ResetPollLayout(PollLayout):
    body = struct.Struct('>2xI64s4sI20x')

    def encode(self, request):
        return self.body.pack(request.session_id, encode_host(request.host), b'\x00\x00\x00\x14',
                              request.action_id)

    def decode(self, poll_type, data, offset):
        session_id, host, _, action_id = Codec._unpack(self.body, data, offset, 'poll request')
        return PollRequest(poll_type, host=decode_host(host), session_id=session_id, action_id=action_id)


class PollRequestCodec(Codec):
    layout = struct.Struct('>H')
    layouts = {
        PollType.EMPTY: EmptyPollLayout(),
        PollType.HOST_ONLY: HostOnlyPollLayout(),
        PollType.FULL: FullPollLayout(),
        PollType.RESET: ResetPollLayout(),
    }

    def encode(self, value: PollRequest):
        return self.layout.pack(value.poll_type) + self.layouts[value.poll_type].encode(value)

    def decode(self, data):
        poll_type, = self._unpack(self.layout, data, what='poll request')
        try:
            poll_type = PollType(poll_type)
        except ValueError:
            raise PayloadError("unknown poll type %#06x" % poll_type) from None
        return self.layouts[poll_type].decode(poll_type, data, self.layout.size)


class RawStatus(CommonEqualityMixin, StringerMixin):
    """
    The scan settings selected on the device panel, as the raw codes the device sends.
    Translating the codes is the job of scanbutton.mapping.
    """

    def __init__(self, color_mode, page, format, dpi, source, adf_type=0, adf_orientation=0):
        self.color_mode = color_mode
        self.page = page
        self.format = format
        self.dpi = dpi
        self.source = source
        self.adf_type = adf_type
        self.adf_orientation = adf_orientation


class PollResponse(CommonEqualityMixin, StringerMixin):
    """
    The BUTTON_EVENT response. When the button was pressed the status has the BUTTON_PRESSED
    bit set and the response carries the action id and the raw status; otherwise it carries the
    session id to use for the next poll.
    """

    def __init__(self, status, session_id=None, action_id=None, interrupt: RawStatus=None):
        self.status = status
        self.session_id = session_id
        self.action_id = action_id
        self.interrupt = interrupt

    @property
    def button_pressed(self):
        return bool(self.status & BUTTON_PRESSED)


class PollResponseCodec(Codec):
    """
    status u32, session id u32, 4 reserved, action id u32, then a 20 byte block with
    the raw codes at offsets 7 color mode, 8 source, 9 feeder type, 10 page, 11 format, 12 dpi,
    16 feeder orientation.
    """
    layout = struct.Struct('>II4sI7xBBBBBB3xB3x')

    def encode(self, value: PollResponse):
        status = value.interrupt or RawStatus(0, 0, 0, 0, 0)
        return self.layout.pack(value.status, value.session_id or 0, b'\x00\x00\x00\x14', value.action_id or 0,
                                status.color_mode, status.source, status.adf_type,
                                status.page, status.format, status.dpi, status.adf_orientation)

    def decode(self, data):
        (status, session_id, _, action_id,
         color_mode, source, adf_type, page, format, dpi, adf_orientation) = \
            self._unpack(self.layout, data, what='poll response')
        if status & BUTTON_PRESSED:
            interrupt = RawStatus(color_mode, page, format, dpi, source, adf_type, adf_orientation)
            return PollResponse(status, action_id=action_id, interrupt=interrupt)
        return PollResponse(status, session_id=session_id)


class TypeMappingCodec:
    """ Delegates to the codec for a command, as chosen by the codecs callable. """

    def __init__(self, codecs: callable):
        self.codecs = codecs

    def encode(self, command, value):
        delegate = self.fetch(command)
        return delegate.encode(value)

    def decode(self, command, data):
        delegate = self.fetch(command)
        return delegate.decode(data)

    def fetch(self, command):
        delegate = self.codecs(command)
        if not delegate:
            raise KeyError(command)
        return delegate


class DictionaryMappingCodec(TypeMappingCodec):
    def __init__(self, codecs: dict):
        super().__init__(self.lookup)
        self.codecs_dict = codecs

    def lookup(self, command):
        return self.codecs_dict.get(command)


class PayloadCodecs(DictionaryMappingCodec):
    """ The payload codecs for all commands of the scanner protocol. """

    def __init__(self, codecs: dict=None):
        super().__init__(codecs if codecs is not None else {
            Command.DISCOVER: EmptyCodec(),
            Command.DISCOVER_ACK: DiscoverResponseCodec(),
            Command.GET_ID: EmptyCodec(),
            Command.IDENTITY: DeviceIdCodec(),
            Command.POLL_BUTTON: PollRequestCodec(),
            Command.BUTTON_EVENT: PollResponseCodec(),
        })


payload_codecs = PayloadCodecs()
