from __future__ import annotations

import struct

from xcloudpcap.models import ClassifiedPacket, PacketKind, ProbeType


STUN_MAGIC_COOKIE = 0x2112A442
STUN_HEADER_LEN = 20
PROBE_ACK_LEN = 6
PROBE_SYN_HEADER_LEN = 4
PROBE_MIN_LEN = 3
RTP_MIN_LEN = 12


def is_stun(payload: bytes) -> bool:
    return len(payload) >= STUN_HEADER_LEN and struct.unpack_from("!I", payload, 4)[0] == STUN_MAGIC_COOKIE


def probe_type(payload: bytes) -> ProbeType | None:
    """Probe frames are recognised by their type discriminant plus a size check.

    A Syn either carries a u16 data length matching the bytes that follow, or
    its probe data runs straight from the type to the end of the datagram.
    """
    if len(payload) < PROBE_MIN_LEN:
        return None
    msg_type = struct.unpack_from("<H", payload, 0)[0]
    if msg_type == ProbeType.ACK and len(payload) == PROBE_ACK_LEN:
        return ProbeType.ACK
    if msg_type == ProbeType.SYN:
        return ProbeType.SYN
    return None


def is_rtp(payload: bytes) -> bool:
    return len(payload) >= RTP_MIN_LEN and (payload[0] >> 6) == 2


def classify(payload: bytes) -> ClassifiedPacket:
    """Pick the parser that owns a UDP payload. Never raises."""
    if is_stun(payload):
        return ClassifiedPacket(kind=PacketKind.STUN, data=payload)
    discriminant = probe_type(payload)
    if discriminant is not None:
        return ClassifiedPacket(kind=PacketKind.PROBE, data=payload, probe_type=discriminant)
    if is_rtp(payload):
        return ClassifiedPacket(kind=PacketKind.SRTP_RTP, data=payload)
    return ClassifiedPacket(kind=PacketKind.UNKNOWN, data=payload)
