from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from xcloudpcap.errors import ConfigError
from xcloudpcap.services.mux_demux import DEFAULT_MUX_PAYLOAD_TYPES
from xcloudpcap.services.probing import DEFAULT_LOOKBACK_WINDOW
from xcloudpcap.services.srtp import DEFAULT_PROFILE, PROFILES

LOGGER = logging.getLogger(__name__)


class SrtpConfig(BaseModel):
    key: Optional[str] = None
    profile: str = DEFAULT_PROFILE

    @field_validator("profile", mode="before")
    @classmethod
    def validate_profile(cls, value: object) -> str:
        if value is None:
            return DEFAULT_PROFILE
        normalized = str(value).strip().upper().replace("-", "_")
        if normalized not in PROFILES:
            raise ValueError(f"Unsupported SRTP profile {value!r}; expected one of {sorted(PROFILES)}")
        return normalized

    @field_validator("key", mode="before")
    @classmethod
    def normalize_key(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class ProbingConfig(BaseModel):
    lookback_window: int = Field(default=DEFAULT_LOOKBACK_WINDOW, ge=1, le=65536)


class RtpConfig(BaseModel):
    mux_payload_types: List[int] = Field(default_factory=lambda: sorted(DEFAULT_MUX_PAYLOAD_TYPES))

    @field_validator("mux_payload_types")
    @classmethod
    def validate_payload_types(cls, values: List[int]) -> List[int]:
        bad = [v for v in values if not 0 <= v <= 0x7F]
        if bad:
            raise ValueError(f"RTP payload types must be within 0..127, got {bad}")
        return values


class OutputConfig(BaseModel):
    hexdump: bool = True
    stats: bool = True


class DecoderConfig(BaseModel):
    srtp: SrtpConfig = Field(default_factory=SrtpConfig)
    probing: ProbingConfig = Field(default_factory=ProbingConfig)
    rtp: RtpConfig = Field(default_factory=RtpConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)


def load_config(config_path: Optional[Path]) -> DecoderConfig:
    if config_path is None:
        return DecoderConfig()
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ConfigError("Configuration root must be a YAML object")

    try:
        cfg = DecoderConfig.model_validate(parsed)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    LOGGER.info(
        "Config loaded profile=%s lookback_window=%s mux_payload_types=%s",
        cfg.srtp.profile,
        cfg.probing.lookback_window,
        len(cfg.rtp.mux_payload_types),
        extra={"category": "CONFIG"},
    )
    return cfg
