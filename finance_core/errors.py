"""
Error Taxonomy
==============
Every failure in a confidential exchange is fatal for its session. The
classes below only differ in how they are reported to the operator, which
is what ``kind`` is for.
"""

from typing import Optional


class ExchangeError(Exception):
    """Base class for all session-terminating failures"""
    kind = "exchange"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class TransportError(ExchangeError):
    """
    Framed transport failure.

    Raised for I/O errors, peer closure (including closure in the middle of
    a frame), oversized length headers and expired deadlines.
    """
    kind = "transport"

    def __init__(self, message: str = "", reason: str = "io"):
        super().__init__(message)
        self.reason = reason


class ProtocolError(ExchangeError):
    """
    Session protocol violation.

    Wrong message role or variant, missing key role, parameter mismatch
    between the two ends, or an abort signalled by the remote side
    (``remote_kind`` then holds the peer's error kind).
    """
    kind = "protocol"

    def __init__(self, message: str = "", remote_kind: Optional[str] = None):
        super().__init__(message)
        self.remote_kind = remote_kind


class PipelineDefinitionError(ProtocolError):
    """Malformed evaluation DAG"""


class ScaleMismatch(ExchangeError, AssertionError):
    """Fixed-point scale exponents disagree where they must match"""
    kind = "scale_mismatch"

    def __init__(self, message: str = "", left: int = 0, right: int = 0):
        super().__init__(message or f"scale exponent {left} != {right}")
        self.left = left
        self.right = right


class SchemeValidationError(ExchangeError):
    """Primitive layer rejected parameters, keys, ciphertexts or values"""
    kind = "validation"


ERROR_KINDS = {
    cls.kind: cls
    for cls in (TransportError, ProtocolError, ScaleMismatch, SchemeValidationError)
}
