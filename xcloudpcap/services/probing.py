from __future__ import annotations

import logging
import struct
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, FrozenSet, Optional

from xcloudpcap.errors import MalformedProbe
from xcloudpcap.models import Endpoint, ProbeAck, ProbeCorrelation, ProbePacket, ProbeSyn, ProbeType
from xcloudpcap.services.classifier import PROBE_ACK_LEN, PROBE_MIN_LEN, PROBE_SYN_HEADER_LEN

LOGGER = logging.getLogger(__name__)

DEFAULT_LOOKBACK_WINDOW = 64


def parse_probe(data: bytes) -> ProbePacket:
    """Decode a connection-probing Syn or Ack (little-endian fixed offsets).

    Syn: u16 type=1, u16 data_len, data_len bytes of filler. When the length
    field does not match, the filler starts right after the type and runs to
    the end of the datagram.
    Ack: u16 type=2, u16 accepted_size, u16 appendix.
    """
    if len(data) < 2:
        raise MalformedProbe("Probe type truncated")
    msg_type = struct.unpack_from("<H", data, 0)[0]
    if msg_type == ProbeType.SYN:
        if len(data) >= PROBE_SYN_HEADER_LEN:
            data_len = struct.unpack_from("<H", data, 2)[0]
            if data_len == len(data) - PROBE_SYN_HEADER_LEN:
                return ProbeSyn(data_len=data_len, probe_data=bytes(data[PROBE_SYN_HEADER_LEN:]))
        if len(data) < PROBE_MIN_LEN:
            raise MalformedProbe("Probe Syn carries no probe data")
        return ProbeSyn(data_len=len(data) - 2, probe_data=bytes(data[2:]), length_prefixed=False)
    if msg_type == ProbeType.ACK:
        if len(data) < PROBE_ACK_LEN:
            raise MalformedProbe(f"Probe Ack truncated len={len(data)}")
        accepted_size, appendix = struct.unpack_from("<HH", data, 2)
        return ProbeAck(accepted_size=accepted_size, appendix=appendix, trailing=bytes(data[PROBE_ACK_LEN:]))
    raise MalformedProbe(f"Unknown probe type {msg_type}")


@dataclass
class _PendingSyn:
    record_index: int
    data_len: int
    round_index: int


class _PairState:
    def __init__(self, window: int) -> None:
        self.pending: Deque[_PendingSyn] = deque(maxlen=window)
        self.round_index = -1
        self.last_syn_len: Optional[int] = None


class ProbeCorrelator:
    """Groups probe Syns into rounds and matches Acks back to them.

    State is kept per unordered endpoint pair since Syns and Acks travel in
    opposite directions. Only the last `window` unmatched Syns are remembered;
    unmatched probes are expected on lossy paths.
    """

    def __init__(self, window: int = DEFAULT_LOOKBACK_WINDOW) -> None:
        if window < 1:
            raise ValueError("Lookback window must be positive")
        self.window = window
        self._pairs: Dict[FrozenSet[Endpoint], _PairState] = {}
        self.rounds_seen = 0

    def _state(self, pair: FrozenSet[Endpoint]) -> _PairState:
        state = self._pairs.get(pair)
        if state is None:
            state = _PairState(self.window)
            self._pairs[pair] = state
        return state

    def observe(
        self,
        record_index: int,
        src: Optional[Endpoint],
        dst: Optional[Endpoint],
        packet: ProbePacket,
    ) -> ProbeCorrelation:
        pair: FrozenSet[Endpoint] = frozenset(e for e in (src, dst) if e is not None)
        state = self._state(pair)
        if isinstance(packet, ProbeSyn):
            correlation = self._observe_syn(state, record_index, packet)
        else:
            correlation = self._observe_ack(state, record_index, packet)
        correlation.pair = pair
        return correlation

    def _observe_syn(self, state: _PairState, record_index: int, syn: ProbeSyn) -> ProbeCorrelation:
        # Sizes shrink while the sender searches; a larger size restarts the search.
        if state.last_syn_len is None or syn.data_len > state.last_syn_len:
            state.round_index += 1
            self.rounds_seen += 1
        state.last_syn_len = syn.data_len
        state.pending.append(_PendingSyn(record_index, syn.data_len, state.round_index))
        return ProbeCorrelation(round_index=state.round_index)

    def _observe_ack(self, state: _PairState, record_index: int, ack: ProbeAck) -> ProbeCorrelation:
        best: Optional[_PendingSyn] = None
        best_distance = 0
        for pending in reversed(state.pending):
            distance = abs(pending.data_len - ack.accepted_size)
            if best is None or distance < best_distance:
                best = pending
                best_distance = distance
        if best is None:
            LOGGER.debug(
                "Probe Ack without pending Syn record=%s accepted_size=%s",
                record_index,
                ack.accepted_size,
                extra={"category": "PROBE"},
            )
            return ProbeCorrelation(round_index=max(state.round_index, 0))
        state.pending.remove(best)
        LOGGER.debug(
            "Probe Ack correlated record=%s syn_record=%s accepted_size=%s syn_len=%s round=%s",
            record_index,
            best.record_index,
            ack.accepted_size,
            best.data_len,
            best.round_index,
            extra={"category": "PROBE"},
        )
        return ProbeCorrelation(
            round_index=best.round_index,
            matched_record=best.record_index,
            matched_data_len=best.data_len,
        )
