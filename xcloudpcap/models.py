from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, FrozenSet, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Endpoint:
    ip: str
    port: int

    def __str__(self) -> str:
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class CaptureFrame:
    """One frame as stored in the capture file.

    `frac` is the raw sub-second field of the record (micro- or nanoseconds,
    depending on `nano`) so a rewritten capture keeps exact timing.
    """

    sec: int
    frac: int
    linktype: int
    data: bytes
    wirelen: int
    nano: bool = False

    @property
    def timestamp(self) -> Decimal:
        scale = 1_000_000_000 if self.nano else 1_000_000
        return Decimal(self.sec) + Decimal(self.frac) / Decimal(scale)


@dataclass(frozen=True)
class CaptureRecord:
    index: int
    timestamp: Decimal
    src: Optional[Endpoint]
    dst: Optional[Endpoint]
    payload: bytes
    payload_offset: Optional[int] = None
    reason: Optional[str] = None

    @property
    def endpoint_pair(self) -> Optional[Tuple[Endpoint, Endpoint]]:
        if self.src is None or self.dst is None:
            return None
        return self.src, self.dst


class PacketKind(str, enum.Enum):
    STUN = "stun"
    PROBE = "probe"
    SRTP_RTP = "rtp"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedPacket:
    kind: PacketKind
    data: bytes
    probe_type: Optional[ProbeType] = None


# --- STUN -----------------------------------------------------------------


class StunClass(str, enum.Enum):
    REQUEST = "request"
    INDICATION = "indication"
    SUCCESS = "success-response"
    ERROR = "error-response"


@dataclass
class StunAttribute:
    type: int
    name: str
    raw: bytes
    value: Any = None

    @property
    def opaque(self) -> bool:
        return self.value is None


@dataclass
class StunMessage:
    message_class: StunClass
    method: int
    method_name: str
    length: int
    transaction_id: bytes
    attributes: List[StunAttribute] = field(default_factory=list)

    def attribute(self, name: str) -> Optional[StunAttribute]:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None


# --- Connection probing -------------------------------------------------------


class ProbeType(enum.IntEnum):
    SYN = 1
    ACK = 2


@dataclass
class ProbeSyn:
    data_len: int
    probe_data: bytes = b""
    # False when the data follows the type directly and its length is implied.
    length_prefixed: bool = True


@dataclass
class ProbeAck:
    accepted_size: int
    appendix: int
    trailing: bytes = b""


ProbePacket = Union[ProbeSyn, ProbeAck]


@dataclass
class ProbeCorrelation:
    round_index: int
    pair: FrozenSet[Endpoint] = frozenset()
    matched_record: Optional[int] = None
    matched_data_len: Optional[int] = None


# --- RTP / mux ----------------------------------------------------------------


@dataclass
class RtpExtension:
    profile: int
    data: bytes


@dataclass
class RtpPacket:
    version: int
    padding: bool
    extension: bool
    csrc_count: int
    marker: bool
    payload_type: int
    sequence_number: int
    timestamp: int
    ssrc: int
    csrcs: List[int] = field(default_factory=list)
    header_extension: Optional[RtpExtension] = None
    payload: bytes = b""
    header_length: int = 12
    padding_length: int = 0
    inner: Any = None


@dataclass
class MuxKeepAlive:
    sequence: int
    timestamp: int
    ssrc: int


@dataclass
class MuxControlHeader:
    flags: int
    channel_flags: int
    sequence: int
    cookie: Optional[bytes] = None
    ack_sequence: Optional[int] = None
    extension: Optional[bytes] = None
    next_sequence: Optional[int] = None


@dataclass
class MuxControl:
    header: MuxControlHeader
    opcode: int
    opcode_name: str
    class_name: Optional[str] = None
    channel_class: Optional[str] = None
    fields: dict = field(default_factory=dict)
    trailing: bytes = b""

    @property
    def known_class(self) -> bool:
        return self.channel_class is not None


@dataclass
class MuxDataFrame:
    channel_id: int
    payload: bytes


MuxMessage = Union[MuxKeepAlive, MuxControl, MuxDataFrame]


# --- Output ---------------------------------------------------------------------


@dataclass
class DecodedRecord:
    index: int
    timestamp: Decimal
    src: Optional[Endpoint]
    dst: Optional[Endpoint]
    kind: PacketKind
    payload: bytes
    message: Any = None
    error: Optional[Exception] = None
    authenticated: Optional[bool] = None
    replayed: bool = False
    correlation: Optional[ProbeCorrelation] = None
    plaintext: Optional[bytes] = None
    note: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def integrity_failure(self) -> bool:
        return self.authenticated is False
