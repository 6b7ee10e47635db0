from __future__ import annotations

import base64
import struct
from pathlib import Path

from click.testing import CliRunner
from pylibsrtp import Policy, Session

from xcloudpcap.cli import main

KEY_BLOB = bytes(range(7, 37))
KEY_B64 = base64.b64encode(KEY_BLOB).decode()


def _capture(rtp_bytes, udp_frame, write_pcap) -> Path:
    protector = Session(Policy(key=KEY_BLOB, ssrc_type=Policy.SSRC_ANY_OUTBOUND))
    frames = [
        (1.0, udp_frame(struct.pack("!HHI", 0x0101, 0, 0x2112A442) + bytes(12))),
        (2.0, udp_frame(protector.protect(rtp_bytes(seq=10, payload=struct.pack("<HII", 5, 6, 7), pt=0x65)))),
        (3.0, udp_frame(b"\x01\x02\x03")),
    ]
    return write_pcap(frames)


def test_decode_command_prints_records_and_summary(rtp_bytes, udp_frame, write_pcap) -> None:
    capture = _capture(rtp_bytes, udp_frame, write_pcap)

    result = CliRunner().invoke(main, ["decode", str(capture), "--srtp-key", KEY_B64])

    assert result.exit_code == 0, result.output
    assert "STUN binding success-response" in result.output
    assert "MUX keepalive seq=5 ts=6 ssrc=7" in result.output
    assert "records=3 rtp=1 stun=1 unknown=1 failures=0 decrypted=1" in result.output


def test_decode_command_reads_key_from_environment(rtp_bytes, udp_frame, write_pcap, monkeypatch) -> None:
    capture = _capture(rtp_bytes, udp_frame, write_pcap)
    monkeypatch.setenv("XCLOUDPCAP_SRTP_KEY", KEY_B64)

    result = CliRunner().invoke(main, ["decode", str(capture), "--quiet", "--no-hexdump"])

    assert result.exit_code == 0, result.output
    assert "STUN" not in result.output
    assert "decrypted=1" in result.output


def test_decode_command_writes_rewrite(rtp_bytes, udp_frame, write_pcap, tmp_path: Path) -> None:
    capture = _capture(rtp_bytes, udp_frame, write_pcap)
    out = tmp_path / "plain.pcap"

    result = CliRunner().invoke(main, ["decode", str(capture), "--srtp-key", KEY_B64, "--rewrite", str(out), "--quiet"])

    assert result.exit_code == 0, result.output
    assert out.stat().st_size > 0


def test_decode_command_uses_config_file(rtp_bytes, udp_frame, write_pcap, tmp_path: Path) -> None:
    capture = _capture(rtp_bytes, udp_frame, write_pcap)
    config_file = tmp_path / "decoder.yaml"
    config_file.write_text(f"srtp:\n  key: {KEY_B64}\noutput:\n  stats: false\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["decode", str(capture), "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "MUX keepalive" in result.output
    assert "records=" not in result.output


def test_decode_command_rejects_bad_key(rtp_bytes, udp_frame, write_pcap) -> None:
    capture = _capture(rtp_bytes, udp_frame, write_pcap)

    result = CliRunner().invoke(main, ["decode", str(capture), "--srtp-key", "not-base64!"])

    assert result.exit_code == 1
    assert "not valid base64" in result.output
    assert "STUN" not in result.output
