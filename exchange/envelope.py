"""
Message Envelope
================
Tagged, versioned wrapper carried inside every frame, so receivers check
the role and session variant of each message explicitly instead of
trusting call-site ordering.

JSON layout:
    {"version": 1, "role": "relin_keys", "variant": "budget_goal",
     "label": "", "scale_exponent": 0, "checksum": "...", "payload": "<base64>"}
"""

import base64
import hashlib
import json
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from finance_core.errors import ExchangeError, ProtocolError


PROTOCOL_VERSION = 1


class MessageRole(str, Enum):
    SCHEME_PARAMETERS = "scheme_parameters"
    PUBLIC_KEY = "public_key"
    RELIN_KEYS = "relin_keys"
    GALOIS_KEYS = "galois_keys"
    ENCRYPTED_INPUT = "encrypted_input"
    PLAINTEXT_INPUT = "plaintext_input"
    ENCRYPTED_RESULT = "encrypted_result"
    SESSION_ABORT = "session_abort"


def payload_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()[:16]


class Envelope(BaseModel):
    """One protocol message"""
    model_config = ConfigDict(extra='forbid', frozen=True)

    version: int = PROTOCOL_VERSION
    role: MessageRole
    variant: str = Field(min_length=1)
    label: str = ""
    scale_exponent: int = Field(default=0, ge=0)
    checksum: str
    payload: str

    @classmethod
    def wrap(cls,
             role: MessageRole,
             variant: str,
             payload: bytes,
             label: str = "",
             scale_exponent: int = 0) -> 'Envelope':
        return cls(
            role=role,
            variant=variant,
            label=label,
            scale_exponent=scale_exponent,
            checksum=payload_checksum(payload),
            payload=base64.b64encode(payload).decode('utf-8'),
        )

    @classmethod
    def abort(cls, variant: str, error: Exception) -> 'Envelope':
        """Abort notice telling the peer why the session ended"""
        if isinstance(error, ExchangeError):
            body = error.to_dict()
        else:
            body = {'kind': 'internal', 'message': str(error)}
        return cls.wrap(
            MessageRole.SESSION_ABORT,
            variant or "unknown",
            json.dumps(body).encode('utf-8'),
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode('utf-8')

    @classmethod
    def from_bytes(cls, blob: bytes) -> 'Envelope':
        try:
            envelope = cls.model_validate_json(blob)
        except ValidationError as e:
            raise ProtocolError(f"malformed envelope: {e.error_count()} validation error(s)") from e
        if envelope.version != PROTOCOL_VERSION:
            raise ProtocolError(
                f"protocol version {envelope.version} not supported (expected {PROTOCOL_VERSION})"
            )
        return envelope

    def data(self) -> bytes:
        """Decoded payload after integrity check"""
        try:
            raw = base64.b64decode(self.payload, validate=True)
        except ValueError as e:
            raise ProtocolError(f"{self.role.value}: payload is not base64") from e
        if payload_checksum(raw) != self.checksum:
            raise ProtocolError(f"{self.role.value}: payload integrity check failed")
        return raw

    def expect(self,
               role: MessageRole,
               variant: Optional[str] = None,
               label: Optional[str] = None) -> 'Envelope':
        """Validate role, variant and label; raise on any disagreement"""
        if self.role is MessageRole.SESSION_ABORT and role is not MessageRole.SESSION_ABORT:
            self.raise_abort()
        if self.role is not role:
            raise ProtocolError(f"expected {role.value} message, received {self.role.value}")
        if variant is not None and self.variant != variant:
            raise ProtocolError(
                f"session variant mismatch: expected {variant}, received {self.variant}"
            )
        if label is not None and self.label != label:
            raise ProtocolError(f"expected {role.value} {label!r}, received {self.label!r}")
        return self

    def raise_abort(self):
        try:
            body = json.loads(self.data().decode('utf-8'))
            kind, message = body.get('kind', 'unknown'), body.get('message', '')
        except (ProtocolError, ValueError, AttributeError):
            kind, message = 'unknown', 'unreadable abort notice'
        raise ProtocolError(f"peer aborted the session ({kind}): {message}", remote_kind=kind)
