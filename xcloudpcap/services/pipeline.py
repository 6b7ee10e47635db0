from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Optional

from xcloudpcap.errors import StructuralError
from xcloudpcap.logging_setup import get_logger
from xcloudpcap.models import CaptureRecord, DecodedRecord, PacketKind, ProbeAck, ProbeSyn
from xcloudpcap.services.classifier import classify
from xcloudpcap.services.mux_demux import DEFAULT_MUX_PAYLOAD_TYPES, demux
from xcloudpcap.services.probing import ProbeCorrelator, parse_probe
from xcloudpcap.services.rtp_parser import RtpRouter, is_rtcp, parse_rtp
from xcloudpcap.services.srtp import SrtpEngine
from xcloudpcap.services.stun_parser import parse_stun

LOGGER = get_logger(__name__, "CLASSIFY")


@dataclass
class DecodeStats:
    records: int = 0
    by_kind: Dict[str, int] = field(default_factory=dict)
    failures: int = 0
    decrypted: int = 0
    auth_failures: int = 0
    replays: int = 0
    probe_rounds: int = 0

    def add(self, record: DecodedRecord) -> None:
        self.records += 1
        self.by_kind[record.kind.value] = self.by_kind.get(record.kind.value, 0) + 1
        if record.error is not None:
            self.failures += 1
        if record.plaintext is not None:
            self.decrypted += 1
        if record.authenticated is False:
            self.auth_failures += 1
        if record.replayed:
            self.replays += 1


class DecodePipeline:
    """Turns CaptureRecords into DecodedRecords, one for one and in order.

    Owns the only mutable state of a run: SRTP sessions (inside the engine)
    and the probe correlator. Decryption is skipped when no engine is given.
    """

    def __init__(
        self,
        engine: Optional[SrtpEngine] = None,
        router: Optional[RtpRouter] = None,
        correlator: Optional[ProbeCorrelator] = None,
    ) -> None:
        self.engine = engine
        self.router = router or RtpRouter(DEFAULT_MUX_PAYLOAD_TYPES)
        self.correlator = correlator or ProbeCorrelator()
        self.stats = DecodeStats()

    def decode(self, record: CaptureRecord) -> DecodedRecord:
        if record.src is None:
            decoded = DecodedRecord(
                index=record.index,
                timestamp=record.timestamp,
                src=None,
                dst=None,
                kind=PacketKind.UNKNOWN,
                payload=record.payload,
                note=record.reason,
            )
            self.stats.add(decoded)
            return decoded

        classified = classify(record.payload)
        decoded = DecodedRecord(
            index=record.index,
            timestamp=record.timestamp,
            src=record.src,
            dst=record.dst,
            kind=classified.kind,
            payload=record.payload,
        )
        try:
            if classified.kind == PacketKind.STUN:
                decoded.message = parse_stun(classified.data)
            elif classified.kind == PacketKind.PROBE:
                decoded.message = parse_probe(classified.data)
                decoded.correlation = self.correlator.observe(record.index, record.src, record.dst, decoded.message)
            elif classified.kind == PacketKind.SRTP_RTP:
                self._decode_rtp(record, classified.data, decoded)
        except StructuralError as exc:
            decoded.error = exc
            LOGGER.debug(
                "Record decode failed index=%s kind=%s error=%s: %s",
                record.index,
                classified.kind.value,
                type(exc).__name__,
                exc,
            )
        self.stats.add(decoded)
        return decoded

    def _decode_rtp(self, record: CaptureRecord, data: bytes, decoded: DecodedRecord) -> None:
        if is_rtcp(data):
            # SRTCP keeps its own index and trailer; left untouched.
            decoded.note = "rtcp"
            LOGGER.debug("RTCP packet left opaque record=%s", record.index, extra={"category": "RTP"})
            return
        if self.engine is not None:
            result = self.engine.decrypt(data)
            data = result.packet
            decoded.plaintext = result.packet
            decoded.authenticated = result.authenticated
            decoded.replayed = result.replayed

        packet = parse_rtp(data)
        decoded.message = packet
        if self.router.routes_to_mux(packet):
            packet.inner = demux(packet.payload_type, packet.payload)
            if isinstance(packet.inner, (ProbeSyn, ProbeAck)):
                decoded.correlation = self.correlator.observe(record.index, record.src, record.dst, packet.inner)
        else:
            LOGGER.debug(
                "RTP payload left opaque record=%s pt=%s ssrc=%s",
                record.index,
                packet.payload_type,
                packet.ssrc,
                extra={"category": "RTP"},
            )

    def run(self, records: Iterable[CaptureRecord]) -> Iterator[DecodedRecord]:
        for record in records:
            yield self.decode(record)
