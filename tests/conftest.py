from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Callable, List, Tuple

import pytest
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether
from scapy.packet import Raw
from scapy.utils import PcapWriter


@pytest.fixture(autouse=True)
def _no_log_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XCLOUDPCAP_LOG_FILE", "")


@pytest.fixture
def rtp_bytes() -> Callable[..., bytes]:
    def build(seq: int, payload: bytes = b"payload", pt: int = 0x61, ssrc: int = 1024, ts: int = 0, marker: bool = False) -> bytes:
        return struct.pack("!BBHII", 0x80, (0x80 if marker else 0) | pt, seq, ts, ssrc) + payload

    return build


@pytest.fixture
def udp_frame() -> Callable[..., bytes]:
    def build(payload: bytes, src: str = "10.0.0.1", dst: str = "10.0.0.2", sport: int = 3074, dport: int = 9002) -> bytes:
        return bytes(Ether(src="02:00:00:00:00:01", dst="02:00:00:00:00:02") / IP(src=src, dst=dst) / UDP(sport=sport, dport=dport) / Raw(load=payload))

    return build


@pytest.fixture
def write_pcap(tmp_path: Path) -> Callable[[List[Tuple[float, bytes]], str], Path]:
    def write(frames: List[Tuple[float, bytes]], name: str = "capture.pcap") -> Path:
        path = tmp_path / name
        writer = PcapWriter(str(path), append=False, sync=True, linktype=1)
        for ts, data in frames:
            packet = Ether(data)
            packet.time = ts
            writer.write(packet)
        writer.close()
        return path

    return write


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    if hasattr(root, "_xcloudpcap_logging_installed"):
        del root._xcloudpcap_logging_installed
