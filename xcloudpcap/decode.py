from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from xcloudpcap.config_loader import DecoderConfig
from xcloudpcap.logging_setup import category_context, correlation_context, short_uuid
from xcloudpcap.services.datagram import extract_datagram
from xcloudpcap.services.emitter import format_record, rewrite_frame
from xcloudpcap.services.pcap_io import CaptureRewriter, capture_format, open_capture, read_frames
from xcloudpcap.services.pipeline import DecodePipeline, DecodeStats
from xcloudpcap.services.probing import ProbeCorrelator
from xcloudpcap.services.rtp_parser import RtpRouter
from xcloudpcap.services.srtp import SrtpEngine

LOGGER = logging.getLogger(__name__)


def build_pipeline(config: DecoderConfig) -> DecodePipeline:
    """Create a pipeline; raises KeyMaterialError for a malformed key."""
    engine = None
    if config.srtp.key:
        engine = SrtpEngine.from_base64(config.srtp.key, config.srtp.profile)
    return DecodePipeline(
        engine=engine,
        router=RtpRouter(config.rtp.mux_payload_types),
        correlator=ProbeCorrelator(config.probing.lookback_window),
    )


def decode_capture(
    in_pcap: Path,
    config: DecoderConfig,
    emit: Optional[Callable[[str], None]] = None,
    rewrite_to: Optional[Path] = None,
    correlation_id: Optional[str] = None,
) -> DecodeStats:
    """Decode every frame of `in_pcap`, emitting one text line per record.

    When `rewrite_to` is set, a copy of the capture is written with SRTP
    payloads replaced by their plaintext. Key and capture problems raise
    before anything is emitted or written.
    """
    cid = correlation_id or short_uuid()
    start_ts = time.perf_counter()

    with correlation_context(cid), category_context("CLASSIFY"):
        pipeline = build_pipeline(config)
        reader = open_capture(in_pcap)
        LOGGER.info(
            "Starting decode input=%s decrypt=%s profile=%s rewrite=%s",
            in_pcap,
            pipeline.engine is not None,
            config.srtp.profile,
            rewrite_to or "-",
            extra={"category": "SRTP_DECRYPT"},
        )
        rewriter = None
        if rewrite_to is not None:
            linktype, nano = capture_format(reader)
            rewriter = CaptureRewriter(rewrite_to, linktype=linktype, nano=nano)
        try:
            for index, frame in enumerate(read_frames(in_pcap, reader), start=1):
                record = extract_datagram(index, frame)
                decoded = pipeline.decode(record)
                if emit is not None:
                    emit(format_record(decoded, with_hexdump=config.output.hexdump))
                if rewriter is not None:
                    rewriter.write(frame, rewrite_frame(frame, decoded, record.payload_offset))
        finally:
            if rewriter is not None:
                rewriter.close()

    stats = pipeline.stats
    stats.probe_rounds = pipeline.correlator.rounds_seen
    elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
    LOGGER.info(
        "Decode completed input=%s records=%s by_kind=%s failures=%s decrypted=%s auth_failures=%s replays=%s probe_rounds=%s duration_ms=%s",
        in_pcap,
        stats.records,
        stats.by_kind,
        stats.failures,
        stats.decrypted,
        stats.auth_failures,
        stats.replays,
        stats.probe_rounds,
        elapsed_ms,
        extra={"category": "PERF", "correlation_id": cid},
    )
    return stats
