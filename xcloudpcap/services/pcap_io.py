from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Optional, Tuple

from scapy.error import Scapy_Exception
from scapy.utils import RawPcapNgReader, RawPcapReader, RawPcapWriter

from xcloudpcap.errors import CaptureReadError
from xcloudpcap.models import CaptureFrame

LOGGER = logging.getLogger(__name__)

MICRO = 1_000_000
NANO = 1_000_000_000
DEFAULT_LINKTYPE = 1


def open_capture(path: Path) -> RawPcapReader:
    """Open a pcap/pcapng file; raise CaptureReadError when it cannot be read."""
    if not path.exists():
        raise CaptureReadError(f"Capture file not found: {path}")
    try:
        return RawPcapReader(str(path))
    except (Scapy_Exception, OSError, EOFError) as exc:
        raise CaptureReadError(f"Unreadable capture {path}: {exc}") from exc


def _frame_from_metadata(data: bytes, meta, reader: RawPcapReader) -> CaptureFrame:
    if hasattr(meta, "tshigh"):
        # pcapng: timestamp in interface-specific resolution
        tsresol = int(getattr(meta, "tsresol", MICRO) or MICRO)
        ticks = (meta.tshigh << 32) | meta.tslow
        nano = tsresol > MICRO
        scale = NANO if nano else MICRO
        sec, frac = divmod(ticks * scale // tsresol, scale)
        linktype = int(meta.linktype)
    else:
        sec, frac = int(meta.sec), int(meta.usec)
        nano = bool(getattr(reader, "nano", False))
        linktype = int(reader.linktype)
    wirelen = int(getattr(meta, "wirelen", len(data)) or len(data))
    return CaptureFrame(sec=sec, frac=frac, linktype=linktype, data=bytes(data), wirelen=wirelen, nano=nano)


def read_frames(path: Path, reader: Optional[RawPcapReader] = None) -> Iterator[CaptureFrame]:
    """Yield frames in capture order. The stream is single-pass."""
    reader = reader if reader is not None else open_capture(path)
    count = 0
    try:
        for data, meta in reader:
            count += 1
            yield _frame_from_metadata(data, meta, reader)
    finally:
        reader.close()
        LOGGER.debug("Capture read completed path=%s frames=%s", path, count, extra={"category": "FILES"})


def capture_format(reader: RawPcapReader) -> Tuple[Optional[int], bool]:
    """(link type, nanosecond resolution) known before the first frame.

    pcapng declares link types per interface block, so it reports None.
    """
    if isinstance(reader, RawPcapNgReader):
        return None, False
    return int(reader.linktype), bool(getattr(reader, "nano", False))


class CaptureRewriter:
    """Writes frames back out as pcap, preserving timestamps and link type.

    With a known link type the file and its header are written immediately,
    so an empty input still yields an empty capture.
    """

    def __init__(self, path: Path, linktype: Optional[int] = None, nano: bool = False) -> None:
        self.path = path
        self.linktype = linktype
        self.nano = nano
        self._writer: Optional[RawPcapWriter] = None
        self.frames_written = 0
        self._closed = False
        if linktype is not None:
            self._writer = self._open(linktype, nano)

    def _open(self, linktype: int, nano: bool) -> RawPcapWriter:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Opening rewrite output path=%s linktype=%s", self.path, linktype, extra={"category": "FILES"})
        writer = RawPcapWriter(str(self.path), linktype=linktype, nano=nano, sync=True)
        writer.write_header(None)
        return writer

    def write(self, frame: CaptureFrame, data: bytes) -> None:
        if self._writer is None:
            self._writer = self._open(frame.linktype, frame.nano)
        wirelen = frame.wirelen if data == frame.data else len(data)
        self._writer.write_packet(data, sec=frame.sec, usec=frame.frac, caplen=len(data), wirelen=wirelen)
        self.frames_written += 1

    def close(self) -> None:
        if self._closed:
            return
        if self._writer is None:
            # pcapng input without frames
            self._writer = self._open(DEFAULT_LINKTYPE, self.nano)
        self._writer.close()
        self._closed = True
        LOGGER.info("Rewrite output closed path=%s frames=%s", self.path, self.frames_written, extra={"category": "FILES"})

    def __enter__(self) -> "CaptureRewriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
