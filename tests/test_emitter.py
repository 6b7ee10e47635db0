from __future__ import annotations

import struct
from decimal import Decimal

from xcloudpcap.errors import MalformedStun
from xcloudpcap.models import (
    CaptureFrame,
    DecodedRecord,
    Endpoint,
    PacketKind,
    ProbeAck,
    ProbeCorrelation,
    StunClass,
    StunMessage,
)
from xcloudpcap.services.emitter import MAX_HEXDUMP_BYTES, format_record, format_records, rewrite_frame
from xcloudpcap.services.mux_demux import demux
from xcloudpcap.services.rtp_parser import parse_rtp

SRC = Endpoint("10.0.0.1", 3074)
DST = Endpoint("10.0.0.2", 9002)


def _decoded(kind: PacketKind, payload: bytes, **kwargs) -> DecodedRecord:
    return DecodedRecord(index=7, timestamp=Decimal("12.5"), src=SRC, dst=DST, kind=kind, payload=payload, **kwargs)


def test_stun_line() -> None:
    message = StunMessage(StunClass.REQUEST, 1, "binding", 0, bytes(range(12)))

    line = format_record(_decoded(PacketKind.STUN, b"", message=message))

    assert line == "#7 12.5 10.0.0.1:3074 > 10.0.0.2:9002 STUN binding request id=000102030405060708090a0b attrs=0"


def test_probe_ack_line_shows_matched_syn() -> None:
    record = _decoded(
        PacketKind.PROBE,
        b"",
        message=ProbeAck(accepted_size=1402, appendix=0),
        correlation=ProbeCorrelation(round_index=0, matched_record=3, matched_data_len=1402),
    )

    assert format_record(record).endswith("PROBE ack accepted_size=1402 appendix=0 round=0 syn=#3")


def test_rtp_line_includes_mux_class_and_flags(rtp_bytes) -> None:
    name = b"Microsoft::Basix::Dct::Channel::Class::Audio"
    body = struct.pack("<BBHI", 0x04, 0xC0, 3, 2) + struct.pack("<H", len(name)) + name
    packet = parse_rtp(rtp_bytes(seq=4, payload=body))
    packet.inner = demux(packet.payload_type, packet.payload)

    line = format_record(_decoded(PacketKind.SRTP_RTP, b"", message=packet, authenticated=False, replayed=True))

    assert "RTP MuxDctControl pt=0x61 seq=4" in line
    assert "| MUX control op=create seq=3 class='Microsoft::Basix::Dct::Channel::Class::Audio'" in line
    assert line.endswith("[auth-fail,replay]")


def test_unknown_payload_gets_hexdump() -> None:
    text = format_record(_decoded(PacketKind.UNKNOWN, bytes.fromhex("deadbeef01020304")))

    first, dump = text.split("\n", 1)
    assert first.endswith("UNKNOWN len=8")
    assert "DE AD BE EF 01 02 03 04" in dump


def test_failure_marker_line_and_hexdump_toggle() -> None:
    record = _decoded(PacketKind.STUN, b"\x00" * 24, error=MalformedStun("Attribute overruns"))

    assert "STUN len=24 ERROR MalformedStun: Attribute overruns" in format_record(record)
    assert "\n" not in format_record(record, with_hexdump=False)


def test_long_payload_dump_is_capped() -> None:
    text = format_record(_decoded(PacketKind.UNKNOWN, b"\xaa" * (MAX_HEXDUMP_BYTES + 10)))
    assert text.endswith("... 10 more bytes")


def test_format_records_is_one_line_per_record() -> None:
    records = [_decoded(PacketKind.UNKNOWN, b"x", note="Not UDP")] * 3
    assert len(list(format_records(records, with_hexdump=False))) == 3


def test_rewrite_splices_plaintext_and_keeps_everything_else() -> None:
    frame = CaptureFrame(sec=1, frac=0, linktype=1, data=b"HDR" + b"cipher+tag" + b"TRL", wirelen=16)
    record = _decoded(PacketKind.SRTP_RTP, b"cipher+tag", plaintext=b"plain")

    assert rewrite_frame(frame, record, 3) == b"HDRplainTRL"


def test_rewrite_passes_through_without_plaintext() -> None:
    frame = CaptureFrame(sec=1, frac=0, linktype=1, data=b"HDRstunTRL", wirelen=10)
    record = _decoded(PacketKind.STUN, b"stun")

    assert rewrite_frame(frame, record, 3) is frame.data
