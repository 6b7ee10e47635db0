from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from xcloudpcap.errors import DecryptUnderrun, KeyMaterialError
from xcloudpcap.services.rtp_parser import rtp_header_length

LOGGER = logging.getLogger(__name__)

LABEL_RTP_ENCRYPTION = 0x00
LABEL_RTP_AUTH = 0x01
LABEL_RTP_SALT = 0x02

MASTER_KEY_LEN = 16
KDF_SALT_LEN = 14
SEQ_MOD = 1 << 16
ROC_MAX = 0xFFFFFFFF
REPLAY_WINDOW_SIZE = 64


@dataclass(frozen=True)
class SrtpProfile:
    name: str
    aead: bool
    salt_len: int
    auth_key_len: int
    tag_len: int


PROFILES: Dict[str, SrtpProfile] = {
    "AES_CM_128_HMAC_SHA1_80": SrtpProfile("AES_CM_128_HMAC_SHA1_80", False, 14, 20, 10),
    "AES_CM_128_HMAC_SHA1_32": SrtpProfile("AES_CM_128_HMAC_SHA1_32", False, 14, 20, 4),
    "AEAD_AES_128_GCM": SrtpProfile("AEAD_AES_128_GCM", True, 12, 0, 16),
}
DEFAULT_PROFILE = "AES_CM_128_HMAC_SHA1_80"


def get_profile(name: str) -> SrtpProfile:
    normalized = (name or "").strip().upper().replace("-", "_")
    profile = PROFILES.get(normalized)
    if profile is None:
        raise KeyMaterialError(f"Unsupported SRTP profile: {name}")
    return profile


def parse_master_key(encoded: str, profile: SrtpProfile) -> Tuple[bytes, bytes]:
    """Split a base64 master key blob into (master key, master salt).

    AES-CM profiles take 16 + 14 bytes. AEAD accepts a 12-byte salt (RFC 7714)
    or the 14-byte salt used by MS-SRTP key blobs.
    """
    text = (encoded or "").strip()
    if not text:
        raise KeyMaterialError("SRTP master key is empty")
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyMaterialError(f"SRTP master key is not valid base64: {exc}") from exc
    salt_lengths = (12, 14) if profile.aead else (14,)
    if len(raw) - MASTER_KEY_LEN not in salt_lengths:
        expected = " or ".join(str(MASTER_KEY_LEN + n) for n in salt_lengths)
        raise KeyMaterialError(f"SRTP master key must decode to {expected} bytes, got {len(raw)}")
    return raw[:MASTER_KEY_LEN], raw[MASTER_KEY_LEN:]


def _aes_ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    return Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor().update(data)


def kdf(master_key: bytes, master_salt: bytes, label: int, length: int) -> bytes:
    """RFC 3711 §4.3.3 AES-CM PRF with a key derivation rate of zero."""
    x = bytearray(master_salt.ljust(KDF_SALT_LEN, b"\x00"))
    x[KDF_SALT_LEN - 7] ^= label
    return _aes_ctr(master_key, bytes(x) + b"\x00\x00", b"\x00" * length)


@dataclass(frozen=True)
class SessionKeys:
    encryption_key: bytes
    auth_key: bytes
    salt: bytes


def derive_session_keys(master_key: bytes, master_salt: bytes, profile: SrtpProfile) -> SessionKeys:
    if len(master_key) != MASTER_KEY_LEN:
        raise KeyMaterialError(f"Master key must be {MASTER_KEY_LEN} bytes, got {len(master_key)}")
    if len(master_salt) > KDF_SALT_LEN:
        raise KeyMaterialError(f"Master salt must be at most {KDF_SALT_LEN} bytes, got {len(master_salt)}")
    return SessionKeys(
        encryption_key=kdf(master_key, master_salt, LABEL_RTP_ENCRYPTION, MASTER_KEY_LEN),
        auth_key=kdf(master_key, master_salt, LABEL_RTP_AUTH, profile.auth_key_len) if profile.auth_key_len else b"",
        salt=kdf(master_key, master_salt, LABEL_RTP_SALT, profile.salt_len),
    )


def cm_iv(salt: bytes, ssrc: int, index: int) -> bytes:
    """AES-CM counter block for one packet (RFC 3711 §4.1.1)."""
    value = (int.from_bytes(salt, "big") << 16) ^ (ssrc << 64) ^ (index << 16)
    return value.to_bytes(16, "big")


def guess_index(s_l: int, roc: int, seq: int) -> Tuple[int, int, int]:
    """Infer the 48-bit packet index of `seq` (RFC 3711 §3.3.1).

    Takes the receiver state (highest sequence number s_l, rollover counter
    roc) and returns (new s_l, new roc, index). The candidate ROC among
    roc-1, roc, roc+1 whose index lies closest to the highest index seen wins;
    state only moves forward when the packet is the new highest.
    """
    highest = roc * SEQ_MOD + s_l
    best_roc = roc
    best_distance = abs(roc * SEQ_MOD + seq - highest)
    for candidate in (roc - 1, roc + 1):
        if candidate < 0 or candidate > ROC_MAX:
            continue
        distance = abs(candidate * SEQ_MOD + seq - highest)
        if distance < best_distance:
            best_roc = candidate
            best_distance = distance
    index = best_roc * SEQ_MOD + seq
    if index > highest:
        return seq, best_roc, index
    return s_l, roc, index


class ReplayWindow:
    """Sliding bitmap over the most recent packet indices."""

    def __init__(self, size: int = REPLAY_WINDOW_SIZE) -> None:
        self.size = size
        self.highest: Optional[int] = None
        self.bitmap = 0

    def check_and_update(self, index: int) -> bool:
        """Record `index`; return True when it was already seen."""
        if self.highest is None:
            self.highest = index
            self.bitmap = 1
            return False
        if index > self.highest:
            shift = index - self.highest
            self.bitmap = ((self.bitmap << shift) | 1) & ((1 << self.size) - 1) if shift < self.size else 1
            self.highest = index
            return False
        delta = self.highest - index
        if delta >= self.size:
            return False
        bit = 1 << delta
        if self.bitmap & bit:
            return True
        self.bitmap |= bit
        return False


@dataclass
class SrtpSession:
    ssrc: int
    s_l: int
    keys: SessionKeys
    roc: int = 0
    packets: int = 0
    auth_failures: int = 0
    replay: ReplayWindow = field(default_factory=ReplayWindow)


@dataclass
class SrtpResult:
    packet: bytes
    ssrc: int
    index: int
    roc: int
    authenticated: bool
    replayed: bool


class SrtpEngine:
    """Per-SSRC SRTP receiver contexts sharing one master key.

    Authentication failures are reported on the result, never raised: the
    decrypted bytes are always returned.
    """

    def __init__(self, master_key: bytes, master_salt: bytes, profile: SrtpProfile | str = DEFAULT_PROFILE) -> None:
        self.profile = get_profile(profile) if isinstance(profile, str) else profile
        self.keys = derive_session_keys(master_key, master_salt, self.profile)
        self.sessions: Dict[int, SrtpSession] = {}

    @classmethod
    def from_base64(cls, encoded: str, profile: SrtpProfile | str = DEFAULT_PROFILE) -> "SrtpEngine":
        resolved = get_profile(profile) if isinstance(profile, str) else profile
        master_key, master_salt = parse_master_key(encoded, resolved)
        return cls(master_key, master_salt, resolved)

    def session(self, ssrc: int, seq: int) -> SrtpSession:
        current = self.sessions.get(ssrc)
        if current is None:
            current = SrtpSession(ssrc=ssrc, s_l=seq, keys=self.keys)
            self.sessions[ssrc] = current
            LOGGER.debug("SRTP session created ssrc=%s initial_seq=%s", ssrc, seq, extra={"category": "SRTP_DECRYPT"})
        return current

    def decrypt(self, packet: bytes) -> SrtpResult:
        header_len = rtp_header_length(packet)
        tag_len = self.profile.tag_len
        if len(packet) < header_len + tag_len:
            raise DecryptUnderrun(
                f"SRTP packet of {len(packet)} bytes shorter than header {header_len} + tag {tag_len}"
            )
        seq, = struct.unpack_from("!H", packet, 2)
        ssrc, = struct.unpack_from("!I", packet, 8)

        session = self.session(ssrc, seq)
        new_s_l, new_roc, index = guess_index(session.s_l, session.roc, seq)
        roc = index >> 16

        if self.profile.aead:
            plaintext, authenticated = self._decrypt_aead(packet, header_len, ssrc, roc, seq)
        else:
            plaintext, authenticated = self._decrypt_cm(packet, header_len, ssrc, roc, index)

        session.s_l, session.roc = new_s_l, new_roc
        session.packets += 1
        replayed = session.replay.check_and_update(index)
        if not authenticated:
            session.auth_failures += 1
            LOGGER.debug(
                "SRTP authentication failed ssrc=%s seq=%s roc=%s",
                ssrc,
                seq,
                roc,
                extra={"category": "SRTP_DECRYPT"},
            )
        return SrtpResult(
            packet=plaintext,
            ssrc=ssrc,
            index=index,
            roc=roc,
            authenticated=authenticated,
            replayed=replayed,
        )

    def _decrypt_cm(self, packet: bytes, header_len: int, ssrc: int, roc: int, index: int) -> Tuple[bytes, bool]:
        tag_len = self.profile.tag_len
        authenticated_portion = packet[:-tag_len]
        tag = packet[-tag_len:]
        mac = hmac.new(self.keys.auth_key, authenticated_portion + struct.pack("!I", roc), hashlib.sha1).digest()
        authenticated = hmac.compare_digest(mac[:tag_len], tag)

        payload = _aes_ctr(self.keys.encryption_key, cm_iv(self.keys.salt, ssrc, index), authenticated_portion[header_len:])
        return authenticated_portion[:header_len] + payload, authenticated

    def _decrypt_aead(self, packet: bytes, header_len: int, ssrc: int, roc: int, seq: int) -> Tuple[bytes, bool]:
        tag_len = self.profile.tag_len
        header = packet[:header_len]
        ciphertext = packet[header_len:-tag_len]
        nonce_input = struct.pack("!HIIH", 0, ssrc, roc, seq)
        iv = bytes(a ^ b for a, b in zip(self.keys.salt, nonce_input))
        try:
            payload = AESGCM(self.keys.encryption_key).decrypt(iv, packet[header_len:], header)
            return header + payload, True
        except InvalidTag:
            # GCM encrypts with the counter starting at 2 (J0 + 1).
            payload = _aes_ctr(self.keys.encryption_key, iv + b"\x00\x00\x00\x02", ciphertext)
            return header + payload, False
