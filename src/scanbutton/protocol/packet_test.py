import unittest

from hamcrest import assert_that, calling, equal_to, is_, raises

from scanbutton.protocol.packet import BadMagicError, Command, DecodeError, Frame, HEADER, PacketType, \
    PayloadType, TruncatedFrameError, UnknownCommandError, decode, encode, hexdump


class CommandTest(unittest.TestCase):

    def test_header_types(self):
        assert_that(Command.POLL_BUTTON.packet_type, is_(PacketType.SCANNER_COMMAND))
        assert_that(Command.POLL_BUTTON.payload_type, is_(PayloadType.POLL))
        assert_that(Command.DISCOVER_ACK.packet_type, is_(PacketType.SCANNER_RESPONSE))

    def test_requests_know_their_response(self):
        assert_that(Command.DISCOVER.response, is_(Command.DISCOVER_ACK))
        assert_that(Command.GET_ID.response, is_(Command.IDENTITY))
        assert_that(Command.POLL_BUTTON.response, is_(Command.BUTTON_EVENT))

    def test_responses_have_no_response(self):
        assert_that(calling(getattr).with_args(Command.BUTTON_EVENT, 'response'), raises(ValueError))

    def test_lookup(self):
        assert_that(Command.lookup(0x82, 0x32), is_(Command.BUTTON_EVENT))
        assert_that(calling(Command.lookup).with_args(0x01, 0x32), raises(UnknownCommandError))


class EncodeTest(unittest.TestCase):

    def test_header_layout(self):
        frame = encode(Command.POLL_BUTTON, 0x0102, b'\xaa\xbb\xcc')
        assert_that(frame, is_(b'BJNP' + bytes([0x02, 0x32, 0, 0, 0x01, 0x02, 0, 0, 0, 0, 0, 3]) + b'\xaa\xbb\xcc'))

    def test_header_size(self):
        assert_that(HEADER.size, is_(16))
        assert_that(len(encode(Command.DISCOVER, 0)), is_(16))

    def test_sequence_out_of_range(self):
        assert_that(calling(encode).with_args(Command.DISCOVER, 0x10000), raises(ValueError))
        assert_that(calling(encode).with_args(Command.DISCOVER, -1), raises(ValueError))


class DecodeTest(unittest.TestCase):

    def test_round_trip_every_command(self):
        payloads = [b'', b'\x00', bytes(range(256)) * 3]
        for command in Command:
            for sequence in (0, 1, 5, 0xFFFF):
                for payload in payloads:
                    frame = decode(encode(command, sequence, payload))
                    assert_that(tuple(frame), is_((command, sequence, payload)))

    def test_error_and_job_id(self):
        frame = decode(encode(Command.IDENTITY, 3, b'', error=0x2a, job_id=7))
        assert_that(frame, equal_to(Frame(Command.IDENTITY, 3, b'', 0x2a, 7)))

    def test_trailing_bytes_ignored(self):
        frame = decode(encode(Command.BUTTON_EVENT, 9, b'abc') + b'garbage')
        assert_that(frame.payload, is_(b'abc'))

    def test_bad_magic(self):
        data = b'XJNP' + encode(Command.DISCOVER, 1)[4:]
        assert_that(calling(decode).with_args(data), raises(BadMagicError))

    def test_short_garbage_is_bad_magic(self):
        assert_that(calling(decode).with_args(b'hi'), raises(BadMagicError))

    def test_truncated_header(self):
        assert_that(calling(decode).with_args(b'BJNP\x82\x32'), raises(TruncatedFrameError))
        assert_that(calling(decode).with_args(b''), raises(TruncatedFrameError))

    def test_truncated_payload(self):
        data = encode(Command.BUTTON_EVENT, 1, b'abcdef')[:-2]
        assert_that(calling(decode).with_args(data), raises(TruncatedFrameError))

    def test_unknown_command(self):
        data = bytearray(encode(Command.DISCOVER, 1))
        data[5] = 0x02      # start scan
        assert_that(calling(decode).with_args(bytes(data)), raises(UnknownCommandError))

    def test_all_decode_errors_share_a_base(self):
        for error in (BadMagicError, TruncatedFrameError, UnknownCommandError):
            assert_that(issubclass(error, DecodeError), is_(True))

    def test_str(self):
        assert_that(str(Frame(Command.DISCOVER, 4, b'ab', error=1)),
                    is_("[DISCOVER] sequence=4 payload_len=2 error=0x01"))


class HexdumpTest(unittest.TestCase):

    def test_lines(self):
        lines = hexdump(bytes(range(0x40, 0x40 + 20))).split('\n')
        assert_that(len(lines), is_(2))
        assert_that(lines[0].startswith('0000  40 41 42'), is_(True))
        assert_that(lines[0].endswith('@ABCDEFGHIJKLMNO'), is_(True))
        assert_that(lines[1].startswith('0010  50 51 52 53'), is_(True))
