from __future__ import annotations

from typing import Iterable, Iterator, List

from scapy.utils import hexdump

from xcloudpcap.models import (
    CaptureFrame,
    DecodedRecord,
    MuxControl,
    MuxDataFrame,
    MuxKeepAlive,
    PacketKind,
    ProbeAck,
    ProbeSyn,
    RtpPacket,
    StunMessage,
)
from xcloudpcap.services.mux_demux import describe, payload_type_name


MAX_HEXDUMP_BYTES = 256


def _endpoints(record: DecodedRecord) -> str:
    if record.src is None or record.dst is None:
        return "-"
    return f"{record.src} > {record.dst}"


def _describe_stun(message: StunMessage) -> str:
    return (
        f"STUN {message.method_name} {message.message_class.value} "
        f"id={message.transaction_id.hex()} attrs={len(message.attributes)}"
    )


def _describe_probe(message, record: DecodedRecord) -> str:
    if isinstance(message, ProbeSyn):
        text = f"PROBE syn data_len={message.data_len}"
        if not message.length_prefixed:
            text += " implied-len"
    else:
        text = f"PROBE ack accepted_size={message.accepted_size} appendix={message.appendix}"
    correlation = record.correlation
    if correlation is not None:
        text += f" round={correlation.round_index}"
        if correlation.matched_record is not None:
            text += f" syn=#{correlation.matched_record}"
    return text


def _describe_rtp(packet: RtpPacket, record: DecodedRecord) -> str:
    text = (
        f"RTP {payload_type_name(packet.payload_type)} pt=0x{packet.payload_type:02x} "
        f"seq={packet.sequence_number} ts={packet.timestamp} ssrc={packet.ssrc} len={len(packet.payload)}"
    )
    if packet.marker:
        text += " marker"
    inner = packet.inner
    if isinstance(inner, (MuxKeepAlive, MuxControl, MuxDataFrame)):
        kind, details = describe(inner)
        text += f" | MUX {kind} {details}"
    elif isinstance(inner, (ProbeSyn, ProbeAck)):
        text += " | " + _describe_probe(inner, record)
    return text


def _flags(record: DecodedRecord) -> str:
    flags: List[str] = []
    if record.authenticated is False:
        flags.append("auth-fail")
    if record.replayed:
        flags.append("replay")
    return f" [{','.join(flags)}]" if flags else ""


def format_record(record: DecodedRecord, with_hexdump: bool = True) -> str:
    """Render one DecodedRecord as a line (plus hex dump for raw/failed payloads)."""
    prefix = f"#{record.index} {record.timestamp} {_endpoints(record)}"
    message = record.message
    if isinstance(message, StunMessage):
        body = _describe_stun(message)
    elif isinstance(message, (ProbeSyn, ProbeAck)):
        body = _describe_probe(message, record)
    elif isinstance(message, RtpPacket):
        body = _describe_rtp(message, record)
    else:
        # STUN, PROBE, SRTP or UNKNOWN
        body = f"{record.kind.name.split('_')[0]} len={len(record.payload)}"
        if record.note:
            body += f" ({record.note})"

    if record.error is not None:
        body += f" ERROR {type(record.error).__name__}: {record.error}"
    line = f"{prefix} {body}{_flags(record)}"

    if with_hexdump and (record.error is not None or record.kind == PacketKind.UNKNOWN):
        dump = hexdump(record.payload[:MAX_HEXDUMP_BYTES], dump=True)
        if len(record.payload) > MAX_HEXDUMP_BYTES:
            dump += f"\n... {len(record.payload) - MAX_HEXDUMP_BYTES} more bytes"
        line = f"{line}\n{dump}"
    return line


def format_records(records: Iterable[DecodedRecord], with_hexdump: bool = True) -> Iterator[str]:
    for record in records:
        yield format_record(record, with_hexdump=with_hexdump)


def rewrite_frame(frame: CaptureFrame, record: DecodedRecord, payload_offset: int | None) -> bytes:
    """Return the frame bytes with the SRTP payload swapped for its plaintext.

    Outer headers (including their length fields and checksums) and any link
    trailer are copied unchanged. Records without recovered plaintext pass
    through byte-identical.
    """
    if record.plaintext is None or payload_offset is None:
        return frame.data
    end = payload_offset + len(record.payload)
    return frame.data[:payload_offset] + record.plaintext + frame.data[end:]
