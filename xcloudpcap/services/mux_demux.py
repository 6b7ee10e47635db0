from __future__ import annotations

import enum
import logging
import struct
from typing import Dict, Optional, Tuple

from xcloudpcap.errors import MalformedMux
from xcloudpcap.models import MuxControl, MuxControlHeader, MuxDataFrame, MuxKeepAlive, MuxMessage, ProbePacket
from xcloudpcap.services.probing import parse_probe

LOGGER = logging.getLogger(__name__)


class PayloadType(enum.IntEnum):
    MUX_DCT_CHANNEL_RANGE_DEFAULT = 0x23
    MUX_DCT_CHANNEL_RANGE_END = 0x3F
    BASE_LINK_CONTROL = 0x60
    MUX_DCT_CONTROL = 0x61
    FEC_CONTROL = 0x62
    SECURITY_LAYER_CTRL = 0x63
    URCP_CONTROL = 0x64
    UDP_KEEPALIVE = 0x65
    UDP_CONNECTION_PROBING = 0x66
    URCP_DUMMY_PACKET = 0x68
    MOCK_UDP_DCT_CTRL = 0x7F


DEFAULT_MUX_PAYLOAD_TYPES = frozenset(
    list(range(PayloadType.MUX_DCT_CHANNEL_RANGE_DEFAULT, PayloadType.MUX_DCT_CHANNEL_RANGE_END + 1))
    + [PayloadType.MUX_DCT_CONTROL, PayloadType.UDP_KEEPALIVE, PayloadType.UDP_CONNECTION_PROBING]
)


def payload_type_name(payload_type: int) -> str:
    if PayloadType.MUX_DCT_CHANNEL_RANGE_DEFAULT <= payload_type <= PayloadType.MUX_DCT_CHANNEL_RANGE_END:
        return "MuxDCTChannel"
    try:
        return "".join(part.capitalize() for part in PayloadType(payload_type).name.split("_"))
    except ValueError:
        return f"pt{payload_type}"


class ControlOpcode(enum.IntEnum):
    CREATE = 2
    OPEN = 3
    CLOSE = 4


CHANNEL_CLASS_PREFIX = "Microsoft::Basix::Dct::Channel::Class::"
CHANNEL_CLASSES = (
    "Audio",
    "Video",
    "Input",
    "InputV2",
    "Input Feedback",
    "ChatAudio",
    "Control",
    "Messaging",
    "QoS",
)

KEEPALIVE_LEN = 10

# Control sub-header flag bits
FLAG_ACK = 0x10
FLAG_EXTENSION = 0x40
FLAG_NEXT_SEQUENCE = 0x01
CHANNEL_FLAG_COOKIE = 0x01
COOKIE_LEN = 3
EXTENSION_LEN = 6


class _Reader:
    """Bounds-checked little-endian cursor over a single payload."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def take(self, count: int, what: str) -> bytes:
        end = self.offset + count
        if end > len(self.data):
            raise MalformedMux(f"{what} needs {count} bytes at offset {self.offset}, payload has {len(self.data)}")
        chunk = bytes(self.data[self.offset : end])
        self.offset = end
        return chunk

    def u8(self, what: str) -> int:
        return self.take(1, what)[0]

    def u16(self, what: str) -> int:
        return struct.unpack("<H", self.take(2, what))[0]

    def u32(self, what: str) -> int:
        return struct.unpack("<I", self.take(4, what))[0]

    def rest(self) -> bytes:
        chunk = bytes(self.data[self.offset :])
        self.offset = len(self.data)
        return chunk


def parse_keepalive(payload: bytes) -> MuxKeepAlive:
    if len(payload) < KEEPALIVE_LEN:
        raise MalformedMux(f"Keepalive needs {KEEPALIVE_LEN} bytes, got {len(payload)}")
    sequence, timestamp, ssrc = struct.unpack_from("<HII", payload, 0)
    return MuxKeepAlive(sequence=sequence, timestamp=timestamp, ssrc=ssrc)


def _parse_control_header(reader: _Reader) -> MuxControlHeader:
    flags = reader.u8("control flags")
    channel_flags = reader.u8("channel flags")
    cookie = reader.take(COOKIE_LEN, "routing cookie") if channel_flags & CHANNEL_FLAG_COOKIE else None
    sequence = reader.u16("sequence")
    header = MuxControlHeader(flags=flags, channel_flags=channel_flags, sequence=sequence, cookie=cookie)
    if flags & FLAG_ACK:
        header.ack_sequence = reader.u16("ack sequence")
    if flags & FLAG_EXTENSION:
        header.extension = reader.take(EXTENSION_LEN, "header extension")
    if flags & FLAG_NEXT_SEQUENCE:
        header.next_sequence = reader.u16("next sequence")
    return header


def channel_class(class_name: str) -> Optional[str]:
    if not class_name.startswith(CHANNEL_CLASS_PREFIX):
        return None
    short = class_name[len(CHANNEL_CLASS_PREFIX) :]
    return short if short in CHANNEL_CLASSES else None


def parse_control(payload: bytes) -> MuxControl:
    """Decode a mux DCT control message.

    Create messages name the channel class with a u16-length-prefixed string.
    Whatever follows the known fields is kept as opaque trailing bytes.
    """
    reader = _Reader(payload)
    header = _parse_control_header(reader)
    opcode = reader.u32("opcode")
    try:
        opcode_name = ControlOpcode(opcode).name.lower()
    except ValueError:
        opcode_name = f"op{opcode}"

    message = MuxControl(header=header, opcode=opcode, opcode_name=opcode_name)
    if opcode == ControlOpcode.CREATE:
        name_len = reader.u16("class name length")
        raw_name = reader.take(name_len, "class name")
        message.class_name = raw_name.decode("utf-8", errors="replace")
        message.channel_class = channel_class(message.class_name)
        if message.channel_class is None:
            LOGGER.debug("Unknown mux channel class name=%r", message.class_name, extra={"category": "MUX"})
    message.fields = _control_fields(header)
    message.trailing = reader.rest()
    return message


def _control_fields(header: MuxControlHeader) -> Dict[str, int]:
    fields: Dict[str, int] = {"sequence": header.sequence}
    if header.ack_sequence is not None:
        fields["ack_sequence"] = header.ack_sequence
    if header.next_sequence is not None:
        fields["next_sequence"] = header.next_sequence
    return fields


def demux(payload_type: int, payload: bytes) -> Optional[MuxMessage | ProbePacket]:
    """Decode an RTP payload according to the mux protocol.

    Returns None for payload types that carry no mux framing. Raises
    MalformedMux (or MalformedProbe) when a declared field overruns the payload.
    """
    if PayloadType.MUX_DCT_CHANNEL_RANGE_DEFAULT <= payload_type <= PayloadType.MUX_DCT_CHANNEL_RANGE_END:
        return MuxDataFrame(channel_id=payload_type, payload=bytes(payload))
    if payload_type == PayloadType.MUX_DCT_CONTROL:
        return parse_control(payload)
    if payload_type == PayloadType.UDP_KEEPALIVE:
        return parse_keepalive(payload)
    if payload_type == PayloadType.UDP_CONNECTION_PROBING:
        return parse_probe(payload)
    return None


def describe(message: MuxMessage) -> Tuple[str, str]:
    """Short (kind, details) pair used by the text emitter."""
    if isinstance(message, MuxKeepAlive):
        return "keepalive", f"seq={message.sequence} ts={message.timestamp} ssrc={message.ssrc}"
    if isinstance(message, MuxDataFrame):
        return "data", f"channel={message.channel_id} len={len(message.payload)}"
    details = f"op={message.opcode_name} seq={message.header.sequence}"
    if message.header.ack_sequence is not None:
        details += f" ack={message.header.ack_sequence}"
    if message.class_name is not None:
        details += f" class={message.class_name!r}"
        if not message.known_class:
            details += " (unknown class)"
    if message.trailing:
        details += f" trailing={message.trailing.hex()}"
    return "control", details
