from __future__ import annotations

from decimal import Decimal

from scapy.layers.inet import IP, TCP, UDP, IPOption_EOL, IPOption_NOP
from scapy.layers.inet6 import IPv6
from scapy.layers.l2 import CookedLinux, Dot1Q, Ether
from scapy.packet import Raw

from xcloudpcap.models import CaptureFrame, Endpoint
from xcloudpcap.services.datagram import DLT_EN10MB, DLT_LINUX_SLL, DLT_RAW, extract_datagram, locate_udp_payload

ETH = {"src": "02:00:00:00:00:01", "dst": "02:00:00:00:00:02"}


def _frame(data: bytes, linktype: int = DLT_EN10MB) -> CaptureFrame:
    return CaptureFrame(sec=1700000000, frac=250000, linktype=linktype, data=data, wirelen=len(data))


def test_ipv4_over_ethernet() -> None:
    data = bytes(Ether(**ETH) / IP(src="192.0.2.10", dst="198.51.100.7") / UDP(sport=3074, dport=9002) / Raw(b"hello"))

    record = extract_datagram(1, _frame(data))

    assert record.src == Endpoint("192.0.2.10", 3074)
    assert record.dst == Endpoint("198.51.100.7", 9002)
    assert record.payload == b"hello"
    assert record.payload_offset == 14 + 20 + 8
    assert record.timestamp == Decimal("1700000000.25")


def test_ipv4_options_and_vlan_tag() -> None:
    data = bytes(
        Ether(**ETH)
        / Dot1Q(vlan=7)
        / IP(src="10.0.0.1", dst="10.0.0.2", options=[IPOption_NOP(), IPOption_NOP(), IPOption_NOP(), IPOption_EOL()])
        / UDP(sport=1, dport=2)
        / Raw(b"xy")
    )

    src, dst, offset, length = locate_udp_payload(DLT_EN10MB, data)

    assert (src.port, dst.port) == (1, 2)
    assert offset == 14 + 4 + 24 + 8
    assert data[offset : offset + length] == b"xy"


def test_ethernet_trailer_is_not_payload() -> None:
    data = bytes(Ether(**ETH) / IP(src="10.0.0.1", dst="10.0.0.2") / UDP(sport=1, dport=2) / Raw(b"ab")) + b"\x00" * 6

    record = extract_datagram(1, _frame(data))

    assert record.payload == b"ab"


def test_ipv6_raw_and_cooked_link_types() -> None:
    inner = IPv6(src="2001:db8::1", dst="2001:db8::2") / UDP(sport=5000, dport=6000) / Raw(b"v6")

    raw = extract_datagram(1, _frame(bytes(inner), DLT_RAW))
    assert str(raw.src) == "[2001:db8::1]:5000"
    assert raw.payload == b"v6"

    cooked = extract_datagram(2, _frame(bytes(CookedLinux(proto=0x86DD) / inner), DLT_LINUX_SLL))
    assert cooked.dst == Endpoint("2001:db8::2", 6000)
    assert cooked.payload == b"v6"


def test_non_udp_frame_still_yields_record() -> None:
    data = bytes(Ether(**ETH) / IP(src="10.0.0.1", dst="10.0.0.2") / TCP(sport=1, dport=2))

    record = extract_datagram(5, _frame(data))

    assert record.index == 5
    assert record.src is None
    assert record.payload == data
    assert "Not UDP" in record.reason


def test_teredo_tunnel_is_unwrapped() -> None:
    inner = (
        IPv6(src="2001:0:4136:e378:8000:63bf:3fff:fdd2", dst="2001:0:4136:e37e:0:fbaa:b97e:fe4e")
        / UDP(sport=3074, dport=3074)
        / Raw(b"\x80\x61inner")
    )
    data = bytes(Ether(**ETH) / IP(src="192.0.2.10", dst="198.51.100.7") / UDP(sport=3544, dport=3544) / inner)

    record = extract_datagram(1, _frame(data))

    assert record.src == Endpoint("2001:0:4136:e378:8000:63bf:3fff:fdd2", 3074)
    assert record.dst == Endpoint("2001:0:4136:e37e:0:fbaa:b97e:fe4e", 3074)
    assert record.payload == b"\x80\x61inner"
    assert record.payload_offset == 14 + 20 + 8 + 40 + 8
    assert data[record.payload_offset :] == b"\x80\x61inner"


def test_ipv6_in_udp_without_teredo_addresses_is_left_alone() -> None:
    inner = bytes(IPv6(src="2001:db8::1", dst="2001:db8::2") / UDP(sport=1, dport=2) / Raw(b"x"))
    data = bytes(Ether(**ETH) / IP(src="192.0.2.10", dst="198.51.100.7") / UDP(sport=3544, dport=3544) / Raw(inner))

    record = extract_datagram(1, _frame(data))

    assert record.src == Endpoint("192.0.2.10", 3544)
    assert record.payload == inner
