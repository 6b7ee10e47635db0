from __future__ import annotations

import ipaddress
import logging
import struct
from typing import Optional, Tuple

from xcloudpcap.errors import MalformedDatagram
from xcloudpcap.models import CaptureFrame, CaptureRecord, Endpoint

LOGGER = logging.getLogger(__name__)

# DLT/LINKTYPE values
DLT_NULL = 0
DLT_EN10MB = 1
DLT_RAW = 101
DLT_LINUX_SLL = 113
DLT_IPV4 = 228
DLT_IPV6 = 229

ETHERTYPE_IPV4 = 0x0800
ETHERTYPE_IPV6 = 0x86DD
VLAN_ETHERTYPES = {0x8100, 0x88A8, 0x9100}
IPPROTO_UDP = 17
UDP_HEADER_LEN = 8
TEREDO_PREFIX = b"\x20\x01\x00\x00"


def _network_offset(linktype: int, frame: bytes) -> Tuple[int, Optional[int]]:
    """Return (offset of the IP header, ip version hint) for a link type."""
    if linktype == DLT_EN10MB:
        if len(frame) < 14:
            raise MalformedDatagram("Ethernet header truncated")
        offset = 12
        ethertype = struct.unpack_from("!H", frame, offset)[0]
        while ethertype in VLAN_ETHERTYPES:
            offset += 4
            if len(frame) < offset + 2:
                raise MalformedDatagram("VLAN tag truncated")
            ethertype = struct.unpack_from("!H", frame, offset)[0]
        offset += 2
        if ethertype == ETHERTYPE_IPV4:
            return offset, 4
        if ethertype == ETHERTYPE_IPV6:
            return offset, 6
        raise MalformedDatagram(f"Unsupported ethertype 0x{ethertype:04x}")
    if linktype == DLT_LINUX_SLL:
        if len(frame) < 16:
            raise MalformedDatagram("Linux cooked header truncated")
        protocol = struct.unpack_from("!H", frame, 14)[0]
        if protocol == ETHERTYPE_IPV4:
            return 16, 4
        if protocol == ETHERTYPE_IPV6:
            return 16, 6
        raise MalformedDatagram(f"Unsupported cooked protocol 0x{protocol:04x}")
    if linktype == DLT_NULL:
        return 4, None
    if linktype == DLT_RAW:
        return 0, None
    if linktype == DLT_IPV4:
        return 0, 4
    if linktype == DLT_IPV6:
        return 0, 6
    raise MalformedDatagram(f"Unsupported link type {linktype}")


def _is_teredo_address(address: bytes) -> bool:
    return address[:4] == TEREDO_PREFIX


def _ip_udp(frame: bytes, offset: int, version: int, end: int) -> Tuple[Endpoint, Endpoint, int, int]:
    """Parse an IP header at `offset` followed by UDP, within frame[:end]."""
    if version == 4:
        if end < offset + 20:
            raise MalformedDatagram("IPv4 header truncated")
        ihl = (frame[offset] & 0x0F) * 4
        if ihl < 20 or end < offset + ihl:
            raise MalformedDatagram(f"Invalid IPv4 header length ihl={ihl}")
        protocol = frame[offset + 9]
        frag = struct.unpack_from("!H", frame, offset + 6)[0]
        if protocol != IPPROTO_UDP:
            raise MalformedDatagram(f"Not UDP (ip proto {protocol})")
        if frag & 0x1FFF:
            raise MalformedDatagram("Non-initial IPv4 fragment")
        src_ip = str(ipaddress.IPv4Address(frame[offset + 12 : offset + 16]))
        dst_ip = str(ipaddress.IPv4Address(frame[offset + 16 : offset + 20]))
        udp_offset = offset + ihl
    elif version == 6:
        if end < offset + 40:
            raise MalformedDatagram("IPv6 header truncated")
        next_header = frame[offset + 6]
        if next_header != IPPROTO_UDP:
            raise MalformedDatagram(f"Not UDP (ipv6 next header {next_header})")
        src_ip = str(ipaddress.IPv6Address(frame[offset + 8 : offset + 24]))
        dst_ip = str(ipaddress.IPv6Address(frame[offset + 24 : offset + 40]))
        udp_offset = offset + 40
    else:
        raise MalformedDatagram(f"Unknown IP version {version}")

    if end < udp_offset + UDP_HEADER_LEN:
        raise MalformedDatagram("UDP header truncated")
    sport, dport, udp_len = struct.unpack_from("!HHH", frame, udp_offset)
    payload_offset = udp_offset + UDP_HEADER_LEN
    available = end - payload_offset
    declared = udp_len - UDP_HEADER_LEN if udp_len >= UDP_HEADER_LEN else available
    # Link trailers (ethernet padding) sit past the declared length; rewritten
    # captures may be shorter than the declared length.
    payload_len = min(declared, available)
    return Endpoint(src_ip, sport), Endpoint(dst_ip, dport), payload_offset, payload_len


def _teredo_inner(frame: bytes, offset: int, length: int) -> Optional[Tuple[Endpoint, Endpoint, int, int]]:
    """Inner UDP datagram of a Teredo (RFC 4380) IPv6-in-UDP packet, if any.

    Both IPv6 addresses must carry the 2001:0000::/32 prefix.
    """
    if length < 40 + UDP_HEADER_LEN or frame[offset] >> 4 != 6:
        return None
    if frame[offset + 6] != IPPROTO_UDP:
        return None
    if not (_is_teredo_address(frame[offset + 8 : offset + 24]) and _is_teredo_address(frame[offset + 24 : offset + 40])):
        return None
    return _ip_udp(frame, offset, 6, offset + length)


def locate_udp_payload(linktype: int, frame: bytes) -> Tuple[Endpoint, Endpoint, int, int]:
    """Find the UDP payload inside a link-layer frame.

    Returns (src, dst, payload offset, payload length). Offsets are absolute
    positions inside `frame`, which is what lets a rewrite splice a new
    payload in while keeping every outer header byte untouched. Teredo
    tunnels are unwrapped: the endpoints and payload are those of the inner
    IPv6 UDP datagram.
    """
    offset, version = _network_offset(linktype, frame)
    if len(frame) <= offset:
        raise MalformedDatagram("No network header")
    if version is None:
        version = frame[offset] >> 4

    located = _ip_udp(frame, offset, version, len(frame))
    inner = _teredo_inner(frame, located[2], located[3])
    if inner is not None:
        LOGGER.debug(
            "Teredo tunnel unwrapped outer=%s->%s inner=%s->%s",
            located[0],
            located[1],
            inner[0],
            inner[1],
            extra={"category": "CLASSIFY"},
        )
        return inner
    return located


def extract_datagram(index: int, frame: CaptureFrame) -> CaptureRecord:
    """Turn a captured frame into a CaptureRecord.

    Frames without a usable UDP datagram still produce a record (no endpoints,
    whole frame as payload) so the record stream stays lossless.
    """
    try:
        src, dst, offset, length = locate_udp_payload(frame.linktype, frame.data)
    except MalformedDatagram as exc:
        LOGGER.debug("Frame without UDP datagram index=%s reason=%s", index, exc, extra={"category": "CLASSIFY"})
        return CaptureRecord(
            index=index,
            timestamp=frame.timestamp,
            src=None,
            dst=None,
            payload=frame.data,
            reason=str(exc),
        )
    return CaptureRecord(
        index=index,
        timestamp=frame.timestamp,
        src=src,
        dst=dst,
        payload=frame.data[offset : offset + length],
        payload_offset=offset,
    )
