from __future__ import annotations

import ipaddress
import logging
import struct
import zlib
from typing import Any, Callable, Dict, List, Optional, Tuple

from xcloudpcap.errors import MalformedStun
from xcloudpcap.models import StunAttribute, StunClass, StunMessage
from xcloudpcap.services.classifier import STUN_HEADER_LEN, STUN_MAGIC_COOKIE

LOGGER = logging.getLogger(__name__)

FINGERPRINT_XOR = 0x5354554E

_CLASSES = {
    0b00: StunClass.REQUEST,
    0b01: StunClass.INDICATION,
    0b10: StunClass.SUCCESS,
    0b11: StunClass.ERROR,
}

METHOD_NAMES = {
    0x001: "binding",
    0x003: "allocate",
    0x004: "refresh",
    0x006: "send",
    0x007: "data",
    0x008: "create-permission",
    0x009: "channel-bind",
}

ATTRIBUTE_NAMES = {
    0x0001: "MAPPED-ADDRESS",
    0x0006: "USERNAME",
    0x0008: "MESSAGE-INTEGRITY",
    0x0009: "ERROR-CODE",
    0x000A: "UNKNOWN-ATTRIBUTES",
    0x0012: "XOR-PEER-ADDRESS",
    0x0014: "REALM",
    0x0015: "NONCE",
    0x0016: "XOR-RELAYED-ADDRESS",
    0x0020: "XOR-MAPPED-ADDRESS",
    0x0024: "PRIORITY",
    0x0025: "USE-CANDIDATE",
    0x8022: "SOFTWARE",
    0x8028: "FINGERPRINT",
    0x8029: "ICE-CONTROLLED",
    0x802A: "ICE-CONTROLLING",
    0xC057: "GOOG-NETWORK-INFO",
}


def split_message_type(msg_type: int) -> Tuple[StunClass, int]:
    """Split the 14-bit STUN message type into (class, method).

    Layout (RFC 5389 §6): M11..M7 C1 M6..M4 C0 M3..M0.
    """
    class_bits = ((msg_type >> 7) & 0b10) | ((msg_type >> 4) & 0b01)
    method = (msg_type & 0x000F) | ((msg_type >> 1) & 0x0070) | ((msg_type >> 2) & 0x0F80)
    return _CLASSES[class_bits], method


def _decode_address(value: bytes, xor: bool, transaction_id: bytes) -> Dict[str, Any]:
    if len(value) < 4:
        raise MalformedStun("Address attribute truncated")
    family = value[1]
    port = struct.unpack_from("!H", value, 2)[0]
    addr = value[4:]
    if family == 0x01:
        if len(addr) != 4:
            raise MalformedStun("IPv4 address attribute must carry 4 address bytes")
        mask = struct.pack("!I", STUN_MAGIC_COOKIE)
        version = 4
    elif family == 0x02:
        if len(addr) != 16:
            raise MalformedStun("IPv6 address attribute must carry 16 address bytes")
        mask = struct.pack("!I", STUN_MAGIC_COOKIE) + transaction_id
        version = 6
    else:
        raise MalformedStun(f"Unknown address family 0x{family:02x}")
    if xor:
        port ^= STUN_MAGIC_COOKIE >> 16
        addr = bytes(a ^ m for a, m in zip(addr, mask))
    ip = ipaddress.IPv4Address(addr) if version == 4 else ipaddress.IPv6Address(addr)
    return {"family": version, "ip": str(ip), "port": port}


def _decode_text(value: bytes, transaction_id: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def _decode_hex(value: bytes, transaction_id: bytes) -> str:
    return value.hex()


def _decode_error_code(value: bytes, transaction_id: bytes) -> Dict[str, Any]:
    if len(value) < 4:
        raise MalformedStun("ERROR-CODE truncated")
    code = (value[2] & 0x07) * 100 + value[3]
    return {"code": code, "reason": value[4:].decode("utf-8", errors="replace")}


def _decode_unknown_attributes(value: bytes, transaction_id: bytes) -> List[int]:
    return [struct.unpack_from("!H", value, i)[0] for i in range(0, len(value) - 1, 2)]


def _decode_u32(value: bytes, transaction_id: bytes) -> int:
    if len(value) != 4:
        raise MalformedStun(f"Expected 4-byte value, got {len(value)}")
    return struct.unpack("!I", value)[0]


def _decode_u64(value: bytes, transaction_id: bytes) -> int:
    if len(value) != 8:
        raise MalformedStun(f"Expected 8-byte value, got {len(value)}")
    return struct.unpack("!Q", value)[0]


def _decode_flag(value: bytes, transaction_id: bytes) -> bool:
    return True


def _decode_network_info(value: bytes, transaction_id: bytes) -> Dict[str, int]:
    if len(value) != 4:
        raise MalformedStun("GOOG-NETWORK-INFO must be 4 bytes")
    network_id, cost = struct.unpack("!HH", value)
    return {"network_id": network_id, "network_cost": cost}


_DECODERS: Dict[str, Callable[[bytes, bytes], Any]] = {
    "MAPPED-ADDRESS": lambda v, t: _decode_address(v, False, t),
    "XOR-MAPPED-ADDRESS": lambda v, t: _decode_address(v, True, t),
    "XOR-PEER-ADDRESS": lambda v, t: _decode_address(v, True, t),
    "XOR-RELAYED-ADDRESS": lambda v, t: _decode_address(v, True, t),
    "USERNAME": _decode_text,
    "REALM": _decode_text,
    "NONCE": _decode_text,
    "SOFTWARE": _decode_text,
    "ERROR-CODE": _decode_error_code,
    "UNKNOWN-ATTRIBUTES": _decode_unknown_attributes,
    "PRIORITY": _decode_u32,
    "USE-CANDIDATE": _decode_flag,
    "ICE-CONTROLLED": _decode_u64,
    "ICE-CONTROLLING": _decode_u64,
    "MESSAGE-INTEGRITY": _decode_hex,
    "FINGERPRINT": _decode_u32,
    "GOOG-NETWORK-INFO": _decode_network_info,
}


def _padded(length: int) -> int:
    return (length + 3) & ~3


def parse_stun(data: bytes) -> StunMessage:
    """Decode a STUN message.

    Unknown attribute types are kept as opaque attributes. Raises MalformedStun
    when the declared message length or an attribute overruns the buffer.
    Bytes past the declared message length are ignored.
    """
    if len(data) < STUN_HEADER_LEN:
        raise MalformedStun(f"STUN header truncated len={len(data)}")
    msg_type, msg_len, cookie = struct.unpack_from("!HHI", data, 0)
    if msg_type & 0xC000:
        raise MalformedStun(f"STUN message type has leading bits set type=0x{msg_type:04x}")
    if cookie != STUN_MAGIC_COOKIE:
        raise MalformedStun(f"Bad magic cookie 0x{cookie:08x}")
    end = STUN_HEADER_LEN + msg_len
    if end > len(data):
        raise MalformedStun(f"Declared length {msg_len} exceeds remaining {len(data) - STUN_HEADER_LEN} bytes")

    message_class, method = split_message_type(msg_type)
    transaction_id = bytes(data[8:20])
    message = StunMessage(
        message_class=message_class,
        method=method,
        method_name=METHOD_NAMES.get(method, f"0x{method:03x}"),
        length=msg_len,
        transaction_id=transaction_id,
    )

    offset = STUN_HEADER_LEN
    while offset < end:
        if offset + 4 > end:
            raise MalformedStun(f"Attribute header truncated at offset={offset}")
        attr_type, attr_len = struct.unpack_from("!HH", data, offset)
        value_start = offset + 4
        if value_start + _padded(attr_len) > end:
            raise MalformedStun(
                f"Attribute 0x{attr_type:04x} length={attr_len} overruns message end at offset={offset}"
            )
        value = bytes(data[value_start : value_start + attr_len])
        name = ATTRIBUTE_NAMES.get(attr_type, "UNKNOWN")
        attribute = StunAttribute(type=attr_type, name=name, raw=value)
        decoder = _DECODERS.get(name)
        if decoder is not None:
            try:
                attribute.value = decoder(value, transaction_id)
            except (MalformedStun, struct.error, ValueError) as exc:
                # Well-framed attribute with an unexpected value stays opaque.
                LOGGER.debug(
                    "STUN attribute kept opaque name=%s length=%s reason=%s",
                    name,
                    attr_len,
                    exc,
                    extra={"category": "STUN"},
                )
        if name == "FINGERPRINT":
            expected = (zlib.crc32(data[:offset]) & 0xFFFFFFFF) ^ FINGERPRINT_XOR
            attribute.value = {"crc": attribute.value, "valid": attribute.value == expected}
        message.attributes.append(attribute)
        offset = value_start + _padded(attr_len)

    LOGGER.debug(
        "Parsed STUN class=%s method=%s attributes=%s",
        message.message_class.value,
        message.method_name,
        len(message.attributes),
        extra={"category": "STUN"},
    )
    return message


def fingerprint_valid(message: StunMessage) -> Optional[bool]:
    attr = message.attribute("FINGERPRINT")
    if attr is None:
        return None
    return bool(attr.value["valid"])
