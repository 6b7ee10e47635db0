from __future__ import annotations


class DecodeError(Exception):
    """Base class for every error raised by the decoder."""


class StructuralError(DecodeError):
    """Malformed framing. Downgrades a single record to a failure marker."""


class MalformedDatagram(StructuralError):
    pass


class MalformedStun(StructuralError):
    pass


class MalformedProbe(StructuralError):
    pass


class MalformedRtp(StructuralError):
    pass


class MalformedMux(StructuralError):
    pass


class DecryptUnderrun(StructuralError):
    pass


class FatalError(DecodeError):
    """Aborts the whole run before any output is produced."""


class KeyMaterialError(FatalError):
    pass


class CaptureReadError(FatalError):
    pass


class ConfigError(FatalError):
    pass
