"""
TenSEAL BFV Backend
===================
Implements the primitive contract with TenSEAL's BFV scheme (exact integer
arithmetic with batching).

Wire forms produced here:
- parameters: JSON descriptor + key-free TenSEAL context
- keys:       TenSEAL context carrying exactly one key role
- ciphertext: serialized BFVVector
- plaintext:  little-endian int64 array

TenSEAL bundles parameters with every context, so each key frame is a full
context; the compute party checks that all of them describe the same
parameters before accepting them.
"""

import hashlib
import json
import struct
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np
import tenseal as ts

from .errors import ProtocolError, SchemeValidationError
from .primitives import KeyRole, PrimitiveAdapter, SchemeSettings, ordered_roles


_DESCRIPTOR_HEADER = struct.Struct("!I")

_NO_KEYS = dict(
    save_public_key=False,
    save_secret_key=False,
    save_galois_keys=False,
    save_relin_keys=False,
)


def _key_flags(role: KeyRole) -> dict:
    flags = dict(_NO_KEYS)
    flags[{
        KeyRole.PUBLIC_KEY: 'save_public_key',
        KeyRole.RELIN_KEYS: 'save_relin_keys',
        KeyRole.GALOIS_KEYS: 'save_galois_keys',
    }[role]] = True
    return flags


def _context_has(context: ts.Context, role: KeyRole) -> bool:
    if role is KeyRole.PUBLIC_KEY:
        return context.has_public_key()
    if role is KeyRole.RELIN_KEYS:
        return context.has_relin_keys()
    return context.has_galois_keys()


def _fingerprint(context: ts.Context) -> str:
    """Hash of the context's parameters with all key material stripped"""
    return hashlib.sha256(context.serialize(**_NO_KEYS)).hexdigest()[:16]


def _load_context(blob: bytes, what: str) -> ts.Context:
    try:
        context = ts.context_from(blob)
    except Exception as e:
        raise SchemeValidationError(f"unparsable {what}: {e}") from e
    if context.is_private():
        raise ProtocolError(f"{what} carries a secret key; refusing it")
    return context


class TenSEALPrimitives(PrimitiveAdapter):
    """
    Session-scoped TenSEAL BFV adapter.

    Owner side holds the private context (secret key never serialized).
    Compute side holds the key-free parameter context plus one context per
    received key role.
    """

    def __init__(self, expected: Optional[SchemeSettings] = None):
        """
        Args:
            expected: Parameters the compute party is willing to accept.
                None accepts any valid BFV batching parameters.
        """
        self.expected = expected
        self.settings: Optional[SchemeSettings] = None
        self._context: Optional[ts.Context] = None
        self._key_contexts: Dict[KeyRole, ts.Context] = {}
        self._fingerprint: Optional[str] = None

    # ==================== KEYS AND CONTEXT ====================

    def generate_keys(self, settings: SchemeSettings, roles: Iterable[KeyRole]) -> None:
        try:
            context = ts.context(
                ts.SCHEME_TYPE.BFV,
                poly_modulus_degree=settings.poly_modulus_degree,
                plain_modulus=settings.plain_modulus,
            )
        except Exception as e:
            raise SchemeValidationError(f"invalid BFV parameters: {e}") from e

        # Public and secret keys come with the context
        for role in ordered_roles(roles):
            if role is KeyRole.RELIN_KEYS:
                context.generate_relin_keys()
            elif role is KeyRole.GALOIS_KEYS:
                context.generate_galois_keys()

        self.settings = settings
        self._context = context
        self._fingerprint = _fingerprint(context)

    def export_parameters(self) -> bytes:
        self._require_context()
        descriptor = json.dumps({
            'scheme': self.scheme,
            'poly_modulus_degree': self.settings.poly_modulus_degree,
            'plain_modulus': self.settings.plain_modulus,
        }).encode('utf-8')
        return (
            _DESCRIPTOR_HEADER.pack(len(descriptor))
            + descriptor
            + self._context.serialize(**_NO_KEYS)
        )

    def export_key(self, role: KeyRole) -> bytes:
        self._require_context()
        if not _context_has(self._context, role):
            raise ProtocolError(f"key role {role.value} was not generated")
        return self._context.serialize(**_key_flags(role))

    def load_parameters(self, blob: bytes) -> None:
        settings, context_blob = self._split_parameters(blob)
        context = _load_context(context_blob, "scheme parameters")

        self.settings = settings
        self._context = context
        self._key_contexts = {}
        self._fingerprint = _fingerprint(context)

    def load_key(self, role: KeyRole, blob: bytes) -> None:
        self._require_context()
        context = _load_context(blob, f"{role.value} frame")
        if not _context_has(context, role):
            raise ProtocolError(f"{role.value} frame does not contain that key")
        if _fingerprint(context) != self._fingerprint:
            raise ProtocolError(f"{role.value} was generated under different parameters")
        self._key_contexts[role] = context

    def has_key(self, role: KeyRole) -> bool:
        if role in self._key_contexts:
            return True
        return (
            self._context is not None
            and self._context.is_private()
            and _context_has(self._context, role)
        )

    def parameters_fingerprint(self) -> str:
        self._require_context()
        return self._fingerprint

    @property
    def slot_count(self) -> int:
        self._require_context()
        return self.settings.poly_modulus_degree

    @property
    def plain_modulus(self) -> int:
        self._require_context()
        return self.settings.plain_modulus

    @property
    def can_decrypt(self) -> bool:
        return self._context is not None and self._context.is_private()

    # ==================== ENCODING ====================

    def encode(self, values: Sequence[int]) -> np.ndarray:
        self._require_context()
        if len(values) == 0:
            raise SchemeValidationError("cannot encode an empty value list")
        if len(values) > self.slot_count:
            raise SchemeValidationError(
                f"{len(values)} values exceed the {self.slot_count} available slots"
            )
        half = self.plain_modulus // 2
        for v in values:
            if not -half <= int(v) <= half:
                raise SchemeValidationError(f"value {v} outside plaintext range +/-{half}")
        return np.asarray([int(v) for v in values], dtype=np.int64)

    def decode(self, plaintext: np.ndarray) -> List[int]:
        return [int(v) for v in plaintext]

    def encrypt(self, plaintext: np.ndarray) -> ts.BFVVector:
        self._require_context()
        if not self._context.has_public_key():
            raise ProtocolError("encryption requires the public key")
        return ts.bfv_vector(self._context, plaintext.tolist())

    def decrypt(self, encrypted: ts.BFVVector) -> np.ndarray:
        if not self.can_decrypt:
            raise ValueError("Cannot decrypt: context does not contain secret key")
        return np.asarray(encrypted.decrypt(), dtype=np.int64)

    # ==================== EVALUATION ====================

    def add(self, a, b):
        return self._guard("add", lambda: a + b)

    def add_plain(self, a, plaintext):
        return self._guard("add_plain", lambda: a + self._broadcast(plaintext, a))

    def sub(self, a, b):
        return self._guard("sub", lambda: a - b)

    def sub_plain(self, a, plaintext):
        return self._guard("sub_plain", lambda: a - self._broadcast(plaintext, a))

    def multiply(self, a, b):
        self._require_key(KeyRole.RELIN_KEYS, "ciphertext multiplication")
        return self._guard("multiply", lambda: a * b)

    def multiply_plain(self, a, plaintext):
        return self._guard("multiply_plain", lambda: a * self._broadcast(plaintext, a))

    def reduce(self, a):
        # Ciphertexts are bound to the relin-key context, so TenSEAL has
        # already relinearized any product by the time it is returned.
        self._require_key(KeyRole.RELIN_KEYS, "relinearization")
        return a

    def sum_slots(self, a):
        self._require_key(KeyRole.GALOIS_KEYS, "slot summation")
        galois = self._key_contexts.get(KeyRole.GALOIS_KEYS, self._context)

        def rotate_and_sum():
            total = ts.bfv_vector_from(galois, a.serialize()).sum()
            return ts.bfv_vector_from(self._evaluation_context(), total.serialize())

        return self._guard("sum_slots", rotate_and_sum)

    # ==================== SERIALIZATION ====================

    def serialize_encrypted(self, encrypted) -> bytes:
        return encrypted.serialize()

    def deserialize_encrypted(self, blob: bytes):
        self._require_context()
        try:
            return ts.bfv_vector_from(self._evaluation_context(), blob)
        except Exception as e:
            raise SchemeValidationError(f"malformed ciphertext: {e}") from e

    def serialize_plaintext(self, plaintext: np.ndarray) -> bytes:
        return np.asarray(plaintext, dtype='<i8').tobytes()

    def deserialize_plaintext(self, blob: bytes) -> np.ndarray:
        if len(blob) == 0 or len(blob) % 8:
            raise SchemeValidationError("malformed plaintext: not an int64 array")
        values = np.frombuffer(blob, dtype='<i8').astype(np.int64)
        return self.encode(values.tolist())

    # ==================== HELPERS ====================

    def _split_parameters(self, blob: bytes):
        try:
            (length,) = _DESCRIPTOR_HEADER.unpack_from(blob, 0)
            start = _DESCRIPTOR_HEADER.size
            descriptor = json.loads(blob[start:start + length].decode('utf-8'))
            settings = SchemeSettings(
                poly_modulus_degree=int(descriptor['poly_modulus_degree']),
                plain_modulus=int(descriptor['plain_modulus']),
            )
            scheme = descriptor['scheme']
        except (struct.error, ValueError, KeyError, TypeError) as e:
            raise SchemeValidationError(f"unparsable scheme parameters: {e}") from e

        if scheme != self.scheme:
            raise SchemeValidationError(f"unsupported scheme {scheme!r}")
        degree = settings.poly_modulus_degree
        if degree < 1024 or degree & (degree - 1):
            raise SchemeValidationError(f"invalid poly modulus degree {degree}")
        if settings.plain_modulus % (2 * degree) != 1:
            raise SchemeValidationError("plain modulus does not support batching")
        if self.expected is not None and settings != self.expected:
            raise SchemeValidationError(
                f"parameters {settings} differ from the expected {self.expected}"
            )
        return settings, blob[_DESCRIPTOR_HEADER.size + length:]

    def _evaluation_context(self) -> ts.Context:
        if self._context.is_private():
            return self._context
        for role in (KeyRole.RELIN_KEYS, KeyRole.PUBLIC_KEY):
            if role in self._key_contexts:
                return self._key_contexts[role]
        return self._context

    def _broadcast(self, plaintext: np.ndarray, encrypted) -> List[int]:
        values = [int(v) for v in plaintext]
        size = encrypted.size()
        if len(values) == 1 and size > 1:
            return values * size
        if len(values) != size:
            raise SchemeValidationError(
                f"plaintext of {len(values)} slots cannot combine with {size} slots"
            )
        return values

    def _guard(self, operation: str, fn: Callable):
        try:
            return fn()
        except (ProtocolError, SchemeValidationError):
            raise
        except Exception as e:
            raise SchemeValidationError(f"{operation} failed: {e}") from e

    def _require_context(self):
        if self._context is None:
            raise ProtocolError("no scheme context: generate or load parameters first")

    def _require_key(self, role: KeyRole, purpose: str):
        if not self.has_key(role):
            raise ProtocolError(f"{purpose} requires the {role.value} key role")
