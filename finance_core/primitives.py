"""
Primitive Library Adapter
=========================
The orchestration layer talks to the homomorphic encryption library only
through this contract. One adapter instance is owned by exactly one
session; it holds that session's scheme context and keys and must never be
shared.

Owner side:   generate_keys -> export_parameters / export_key -> encode ->
              encrypt -> (wire) -> decrypt -> decode
Compute side: load_parameters -> load_key (per role) -> deserialize ->
              add / sub / multiply / multiply_plain / reduce / sum_slots ->
              serialize
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Sequence

from .config import DEFAULT_PLAIN_MODULUS, DEFAULT_POLY_MODULUS_DEGREE


class KeyRole(Enum):
    """Key material the compute party may receive, in wire order"""
    PUBLIC_KEY = "public_key"
    RELIN_KEYS = "relin_keys"
    GALOIS_KEYS = "galois_keys"


KEY_ORDER = (KeyRole.PUBLIC_KEY, KeyRole.RELIN_KEYS, KeyRole.GALOIS_KEYS)


def ordered_roles(roles: Iterable[KeyRole]) -> List[KeyRole]:
    """Sort key roles into protocol order"""
    wanted = set(roles)
    return [role for role in KEY_ORDER if role in wanted]


@dataclass(frozen=True)
class SchemeSettings:
    """Requested BFV configuration (owner side)"""
    poly_modulus_degree: int = DEFAULT_POLY_MODULUS_DEGREE
    plain_modulus: int = DEFAULT_PLAIN_MODULUS

    @classmethod
    def from_config(cls, config) -> 'SchemeSettings':
        return cls(
            poly_modulus_degree=config.poly_modulus_degree,
            plain_modulus=config.plain_modulus,
        )


class PrimitiveAdapter(ABC):
    """Contract required from the external FHE primitives library"""

    scheme = "bfv"

    # ==================== KEYS AND CONTEXT ====================

    @abstractmethod
    def generate_keys(self, settings: SchemeSettings, roles: Iterable[KeyRole]) -> None:
        """Create the scheme context, secret key and the requested key roles"""

    @abstractmethod
    def export_parameters(self) -> bytes:
        """Serialized scheme parameters without any key material"""

    @abstractmethod
    def export_key(self, role: KeyRole) -> bytes:
        """Serialized key of one role; never includes the secret key"""

    @abstractmethod
    def load_parameters(self, blob: bytes) -> None:
        """Build the compute-side context from received parameters"""

    @abstractmethod
    def load_key(self, role: KeyRole, blob: bytes) -> None:
        """Load one received key; must match the loaded parameters"""

    @abstractmethod
    def has_key(self, role: KeyRole) -> bool:
        """Whether the key role is available to this context"""

    @abstractmethod
    def parameters_fingerprint(self) -> str:
        """Stable identifier of the active scheme parameters"""

    @property
    @abstractmethod
    def slot_count(self) -> int:
        """Number of batching slots per ciphertext"""

    @property
    @abstractmethod
    def plain_modulus(self) -> int:
        """Plaintext modulus of the active parameters"""

    @property
    @abstractmethod
    def can_decrypt(self) -> bool:
        """True only on the owner side"""

    # ==================== ENCODING ====================

    @abstractmethod
    def encode(self, values: Sequence[int]) -> Any:
        """Scaled integers -> Plaintext"""

    @abstractmethod
    def decode(self, plaintext: Any) -> List[int]:
        """Plaintext -> scaled integers"""

    @abstractmethod
    def encrypt(self, plaintext: Any) -> Any:
        """Plaintext -> EncryptedValue under the public key"""

    @abstractmethod
    def decrypt(self, encrypted: Any) -> Any:
        """EncryptedValue -> Plaintext; owner side only"""

    # ==================== EVALUATION ====================

    @abstractmethod
    def add(self, a: Any, b: Any) -> Any:
        """EncryptedValue + EncryptedValue"""

    @abstractmethod
    def add_plain(self, a: Any, plaintext: Any) -> Any:
        """EncryptedValue + Plaintext"""

    @abstractmethod
    def sub(self, a: Any, b: Any) -> Any:
        """EncryptedValue - EncryptedValue"""

    @abstractmethod
    def sub_plain(self, a: Any, plaintext: Any) -> Any:
        """EncryptedValue - Plaintext"""

    @abstractmethod
    def multiply(self, a: Any, b: Any) -> Any:
        """EncryptedValue * EncryptedValue; result must be reduced before reuse"""

    @abstractmethod
    def multiply_plain(self, a: Any, plaintext: Any) -> Any:
        """EncryptedValue * Plaintext"""

    @abstractmethod
    def reduce(self, a: Any) -> Any:
        """Relinearize; requires the relinearization key role"""

    @abstractmethod
    def sum_slots(self, a: Any) -> Any:
        """Rotate-and-sum all slots into one; requires the Galois key role"""

    # ==================== SERIALIZATION ====================

    @abstractmethod
    def serialize_encrypted(self, encrypted: Any) -> bytes:
        pass

    @abstractmethod
    def deserialize_encrypted(self, blob: bytes) -> Any:
        pass

    @abstractmethod
    def serialize_plaintext(self, plaintext: Any) -> bytes:
        pass

    @abstractmethod
    def deserialize_plaintext(self, blob: bytes) -> Any:
        pass
