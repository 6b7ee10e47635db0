from __future__ import annotations

import struct
from typing import FrozenSet, Iterable, Optional

from xcloudpcap.errors import MalformedRtp
from xcloudpcap.models import RtpExtension, RtpPacket


RTP_HEADER_LEN = 12
RTP_VERSION = 2
# RTCP SR, RR, SDES, BYE and APP (packet types 200-204) with the marker bit folded out
RTCP_PAYLOAD_TYPES = frozenset(range(72, 77))


def is_rtcp(data: bytes) -> bool:
    return len(data) >= 2 and (data[1] & 0x7F) in RTCP_PAYLOAD_TYPES


def rtp_header_length(data: bytes) -> int:
    """Length of the RTP header incl. CSRCs and extension; raises MalformedRtp."""
    if len(data) < RTP_HEADER_LEN:
        raise MalformedRtp(f"RTP header truncated len={len(data)}")
    version = data[0] >> 6
    if version != RTP_VERSION:
        raise MalformedRtp(f"Unsupported RTP version {version}")
    csrc_count = data[0] & 0x0F
    length = RTP_HEADER_LEN + 4 * csrc_count
    if len(data) < length:
        raise MalformedRtp(f"CSRC list truncated csrc_count={csrc_count} len={len(data)}")
    if data[0] & 0x10:
        if len(data) < length + 4:
            raise MalformedRtp("RTP extension header truncated")
        words = struct.unpack_from("!H", data, length + 2)[0]
        length += 4 + 4 * words
        if len(data) < length:
            raise MalformedRtp(f"RTP extension of {words} words overruns packet len={len(data)}")
    return length


def parse_rtp(data: bytes) -> RtpPacket:
    """Decode a plaintext RTP packet. Padding, when flagged, is stripped from the payload."""
    header_len = rtp_header_length(data)
    b0, b1, seq, ts, ssrc = struct.unpack_from("!BBHII", data, 0)
    csrc_count = b0 & 0x0F
    csrcs = list(struct.unpack_from(f"!{csrc_count}I", data, RTP_HEADER_LEN)) if csrc_count else []

    extension: Optional[RtpExtension] = None
    if b0 & 0x10:
        ext_offset = RTP_HEADER_LEN + 4 * csrc_count
        profile, words = struct.unpack_from("!HH", data, ext_offset)
        extension = RtpExtension(profile=profile, data=bytes(data[ext_offset + 4 : ext_offset + 4 + 4 * words]))

    payload_end = len(data)
    padding_length = 0
    if b0 & 0x20:
        if payload_end == header_len:
            raise MalformedRtp("Padding flag set on packet without payload")
        padding_length = data[-1]
        if padding_length == 0 or header_len + padding_length > payload_end:
            raise MalformedRtp(f"Invalid RTP padding length {padding_length}")
        payload_end -= padding_length

    return RtpPacket(
        version=b0 >> 6,
        padding=bool(b0 & 0x20),
        extension=bool(b0 & 0x10),
        csrc_count=csrc_count,
        marker=bool(b1 & 0x80),
        payload_type=b1 & 0x7F,
        sequence_number=seq,
        timestamp=ts,
        ssrc=ssrc,
        csrcs=csrcs,
        header_extension=extension,
        payload=bytes(data[header_len:payload_end]),
        header_length=header_len,
        padding_length=padding_length,
    )


class RtpRouter:
    """Decides which RTP payload types carry the mux channel protocol."""

    def __init__(self, mux_payload_types: Iterable[int]) -> None:
        self.mux_payload_types: FrozenSet[int] = frozenset(mux_payload_types)

    def routes_to_mux(self, packet: RtpPacket) -> bool:
        return packet.payload_type in self.mux_payload_types
