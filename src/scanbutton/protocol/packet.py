"""
Framing of BJNP packets.

Every packet starts with a 16 byte big-endian header:

    magic           4   b'BJNP'
    packet type     1   command or response, printer or scanner
    payload type    1   what the packet is about (discover, poll, ...)
    error           1   device error code, 0 on success
    reserved        1
    sequence        2   chosen by the requester, echoed in the response
    job id          2   0 when there is no job
    payload length  4

followed by the payload. This module only knows the header; the payload bytes are
handed to the payload codecs in scanbutton.protocol.payloads.
"""
import struct
from enum import Enum, IntEnum

from scanbutton.support.mixins import CommonEqualityMixin

MAGIC = b'BJNP'

# the UDP port devices listen on for scanner commands
BJNP_PORT = 8612

HEADER = struct.Struct('>4sBBBBHHI')

MAX_SEQUENCE = 0xFFFF


class DecodeError(ValueError):
    """ The bytes received are not a valid BJNP packet. """


class BadMagicError(DecodeError):
    """ The frame does not start with the BJNP magic. """


class TruncatedFrameError(DecodeError):
    """ The frame is shorter than its header or its declared payload length. """


class UnknownCommandError(DecodeError):
    """ The packet type and payload type pair is not a command this client understands. """


class PacketType(IntEnum):
    PRINTER_COMMAND = 0x01
    SCANNER_COMMAND = 0x02
    PRINTER_RESPONSE = 0x81
    SCANNER_RESPONSE = 0x82


class PayloadType(IntEnum):
    DISCOVER = 0x01
    START_SCAN = 0x02
    JOB_DETAILS = 0x10
    CLOSE = 0x11
    READ = 0x20
    WRITE = 0x21
    GET_ID = 0x30
    POLL = 0x32


class Command(Enum):
    """
    The closed set of packets exchanged with the scanner function of a device.
    The value is the (packet type, payload type) pair in the header.
    """
    DISCOVER = (PacketType.SCANNER_COMMAND, PayloadType.DISCOVER)
    DISCOVER_ACK = (PacketType.SCANNER_RESPONSE, PayloadType.DISCOVER)
    GET_ID = (PacketType.SCANNER_COMMAND, PayloadType.GET_ID)
    IDENTITY = (PacketType.SCANNER_RESPONSE, PayloadType.GET_ID)
    POLL_BUTTON = (PacketType.SCANNER_COMMAND, PayloadType.POLL)
    BUTTON_EVENT = (PacketType.SCANNER_RESPONSE, PayloadType.POLL)

    @property
    def packet_type(self) -> PacketType:
        return self.value[0]

    @property
    def payload_type(self) -> PayloadType:
        return self.value[1]

    @property
    def is_request(self) -> bool:
        return self.packet_type == PacketType.SCANNER_COMMAND

    @property
    def response(self):
        """
        The command a device answers this request with.
        >>> Command.POLL_BUTTON.response is Command.BUTTON_EVENT
        True
        """
        if not self.is_request:
            raise ValueError("%s is not a request" % self.name)
        return Command((PacketType.SCANNER_RESPONSE, self.payload_type))

    @classmethod
    def lookup(cls, packet_type, payload_type):
        try:
            return cls((packet_type, payload_type))
        except ValueError:
            raise UnknownCommandError("unknown command: packet type %#04x, payload type %#04x"
                                      % (packet_type, payload_type)) from None


class Frame(CommonEqualityMixin):
    """ A decoded packet: the command, the sequence number and the raw payload bytes. """

    def __init__(self, command: Command, sequence: int, payload: bytes=b'', error=0, job_id=0):
        self.command = command
        self.sequence = sequence
        self.payload = bytes(payload)
        self.error = error
        self.job_id = job_id

    def __iter__(self):
        """ unpacks as (command, sequence, payload) """
        return iter((self.command, self.sequence, self.payload))

    def __str__(self):
        s = "[%s] sequence=%d payload_len=%d" % (self.command.name, self.sequence, len(self.payload))
        if self.error:
            s += " error=%#04x" % self.error
        if self.job_id:
            s += " job_id=%d" % self.job_id
        return s


def encode(command: Command, sequence: int, payload: bytes=b'', error=0, job_id=0) -> bytes:
    """
    Encodes a complete frame.
    >>> encode(Command.DISCOVER, 1)
    b'BJNP\\x02\\x01\\x00\\x00\\x00\\x01\\x00\\x00\\x00\\x00\\x00\\x00'
    """
    if not 0 <= sequence <= MAX_SEQUENCE:
        raise ValueError("sequence out of range: %d" % sequence)
    header = HEADER.pack(MAGIC, command.packet_type, command.payload_type, error, 0,
                         sequence, job_id, len(payload))
    return header + bytes(payload)


def decode_header(buffer: bytes):
    """
    Decodes the header of a frame.
    :return: a tuple (command, sequence, error, job_id, payload_length)
    """
    buffer = bytes(buffer)
    if not buffer.startswith(MAGIC) and not MAGIC.startswith(buffer[:len(MAGIC)]):
        raise BadMagicError("frame does not start with %r: %r" % (MAGIC, buffer[:len(MAGIC)]))
    if len(buffer) < HEADER.size:
        raise TruncatedFrameError("frame of %d bytes is shorter than the %d byte header"
                                  % (len(buffer), HEADER.size))
    magic, packet_type, payload_type, error, _, sequence, job_id, length = HEADER.unpack_from(buffer)
    command = Command.lookup(packet_type, payload_type)
    return command, sequence, error, job_id, length


def decode(buffer: bytes) -> Frame:
    """
    Decodes a frame. Bytes after the declared payload length are ignored.
    """
    command, sequence, error, job_id, length = decode_header(buffer)
    end = HEADER.size + length
    if len(buffer) < end:
        raise TruncatedFrameError("payload of %d bytes declared, %d received"
                                  % (length, len(buffer) - HEADER.size))
    return Frame(command, sequence, buffer[HEADER.size:end], error, job_id)


def hexdump(data: bytes, width=16) -> str:
    """
    Formats bytes for trace logging, 16 bytes per line with an ASCII column.
    """
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        text = ''.join(chr(b) if 0x20 <= b < 0x7f else '.' for b in chunk)
        lines.append('%04x  %-*s  %s' % (offset, width * 3 - 1, chunk.hex(' '), text))
    return '\n'.join(lines)
