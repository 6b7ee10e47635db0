from __future__ import annotations

import struct
import zlib

import pytest

from xcloudpcap.errors import MalformedStun
from xcloudpcap.models import StunClass
from xcloudpcap.services.stun_parser import fingerprint_valid, parse_stun, split_message_type

COOKIE = 0x2112A442
TRANSACTION_ID = bytes.fromhex("b7e7a701bc34d686fa87dfae")


def _xor_mapped_ipv4(ip: str, port: int) -> bytes:
    addr = bytes(int(part) for part in ip.split("."))
    xaddr = bytes(a ^ c for a, c in zip(addr, struct.pack("!I", COOKIE)))
    value = struct.pack("!BBH", 0, 0x01, port ^ (COOKIE >> 16)) + xaddr
    return struct.pack("!HH", 0x0020, len(value)) + value


def _message(msg_type: int, attributes: bytes, transaction_id: bytes = TRANSACTION_ID) -> bytes:
    return struct.pack("!HHI", msg_type, len(attributes), COOKIE) + transaction_id + attributes


def test_split_message_type() -> None:
    assert split_message_type(0x0001) == (StunClass.REQUEST, 0x001)
    assert split_message_type(0x0101) == (StunClass.SUCCESS, 0x001)
    assert split_message_type(0x0111) == (StunClass.ERROR, 0x001)
    assert split_message_type(0x0011) == (StunClass.INDICATION, 0x001)


def test_binding_response_with_xor_mapped_address() -> None:
    message = parse_stun(_message(0x0101, _xor_mapped_ipv4("192.0.2.1", 32853)))

    assert message.transaction_id == TRANSACTION_ID
    assert message.message_class == StunClass.SUCCESS
    assert message.method_name == "binding"
    assert len(message.attributes) == 1
    attr = message.attributes[0]
    assert attr.name == "XOR-MAPPED-ADDRESS"
    assert attr.value == {"family": 4, "ip": "192.0.2.1", "port": 32853}


def test_unknown_attribute_is_kept_opaque() -> None:
    attrs = struct.pack("!HH", 0xC0FF, 3) + b"abc\x00" + struct.pack("!HH", 0x8022, 4) + b"test"
    message = parse_stun(_message(0x0001, attrs))

    assert [a.name for a in message.attributes] == ["UNKNOWN", "SOFTWARE"]
    assert message.attributes[0].opaque
    assert message.attributes[0].raw == b"abc"
    assert message.attributes[1].value == "test"


def test_attribute_length_overrunning_buffer_raises() -> None:
    attrs = struct.pack("!HH", 0x0006, 64) + b"user"
    with pytest.raises(MalformedStun):
        parse_stun(_message(0x0001, attrs))


def test_declared_length_overrunning_buffer_raises() -> None:
    data = struct.pack("!HHI", 0x0001, 40, COOKIE) + TRANSACTION_ID
    with pytest.raises(MalformedStun):
        parse_stun(data)


def test_truncated_header_raises() -> None:
    with pytest.raises(MalformedStun):
        parse_stun(b"\x00\x01\x00\x00")


def test_error_code_and_priority() -> None:
    error_value = struct.pack("!HBB", 0, 4, 87) + b"Role Conflict"
    attrs = struct.pack("!HH", 0x0009, len(error_value)) + error_value + b"\x00\x00\x00"
    attrs += struct.pack("!HHI", 0x0024, 4, 1853824767)
    message = parse_stun(_message(0x0111, attrs))

    assert message.attribute("ERROR-CODE").value == {"code": 487, "reason": "Role Conflict"}
    assert message.attribute("PRIORITY").value == 1853824767


def test_fingerprint_is_verified() -> None:
    body = struct.pack("!HH", 0x0025, 0)
    fingerprint_len = 8
    head = struct.pack("!HHI", 0x0001, len(body) + fingerprint_len, COOKIE) + TRANSACTION_ID + body
    crc = (zlib.crc32(head) & 0xFFFFFFFF) ^ 0x5354554E
    data = head + struct.pack("!HHI", 0x8028, 4, crc)

    assert fingerprint_valid(parse_stun(data)) is True

    tampered = head + struct.pack("!HHI", 0x8028, 4, crc ^ 1)
    assert fingerprint_valid(parse_stun(tampered)) is False


def test_attribute_with_unexpected_value_stays_opaque() -> None:
    attrs = struct.pack("!HHQ", 0x0024, 8, 1) + struct.pack("!HH", 0x0006, 4) + b"user"
    message = parse_stun(_message(0x0001, attrs))

    priority = message.attribute("PRIORITY")
    assert priority.opaque
    assert priority.raw == struct.pack("!Q", 1)
    assert message.attribute("USERNAME").value == "user"


def test_unknown_address_family_stays_opaque() -> None:
    value = struct.pack("!BBH", 0, 0x03, 1234) + b"\x01\x02\x03\x04"
    attrs = struct.pack("!HH", 0x0020, len(value)) + value + struct.pack("!HHI", 0x0024, 4, 7)
    message = parse_stun(_message(0x0101, attrs))

    mapped = message.attribute("XOR-MAPPED-ADDRESS")
    assert mapped.value is None
    assert mapped.raw == value
    assert message.attribute("PRIORITY").value == 7


def test_short_network_info_stays_opaque() -> None:
    attrs = struct.pack("!HH", 0xC057, 2) + b"\x00\x01\x00\x00"
    message = parse_stun(_message(0x0001, attrs))

    assert message.attributes[0].name == "GOOG-NETWORK-INFO"
    assert message.attributes[0].opaque
