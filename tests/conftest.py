"""
Shared fixtures and a clear-text stand-in for the BFV primitives.

The stand-in honours the adapter contract (key roles, parameter
fingerprints, modular slot arithmetic, secret-key-only decryption) without
any encryption, so protocol tests run fast and independently of TenSEAL.
"""

import asyncio
import hashlib
import json
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from finance_core.config import ExchangeConfig
from finance_core.errors import ProtocolError, SchemeValidationError
from finance_core.primitives import KeyRole, PrimitiveAdapter, SchemeSettings
from finance_core.session_logger import SessionAuditLog

from exchange.framing import FramedChannel


class ClearValue:
    """Slot list standing in for both plaintexts and ciphertexts"""

    def __init__(self, values, encrypted=False, reduced=True):
        self.values = list(values)
        self.encrypted = encrypted
        self.reduced = reduced


class ClearTextPrimitives(PrimitiveAdapter):

    def __init__(self, slots: int = 16):
        self._slots = slots
        self._params = None
        self._roles = set()
        self._secret = False

    # keys and context

    def generate_keys(self, settings: SchemeSettings, roles) -> None:
        self._params = {
            'scheme': self.scheme,
            'poly_modulus_degree': settings.poly_modulus_degree,
            'plain_modulus': settings.plain_modulus,
        }
        self._roles = set(roles)
        self._secret = True

    def export_parameters(self) -> bytes:
        return json.dumps(self._params).encode()

    def export_key(self, role: KeyRole) -> bytes:
        if role not in self._roles:
            raise ProtocolError(f"key role {role.value} was not generated")
        return json.dumps({'role': role.value, 'fingerprint': self.parameters_fingerprint()}).encode()

    def load_parameters(self, blob: bytes) -> None:
        try:
            params = json.loads(blob)
        except ValueError as e:
            raise SchemeValidationError(f"unparsable scheme parameters: {e}") from e
        if not isinstance(params, dict) or params.get('scheme') != self.scheme:
            raise SchemeValidationError("unsupported scheme")
        self._params = params

    def load_key(self, role: KeyRole, blob: bytes) -> None:
        try:
            key = json.loads(blob)
        except ValueError as e:
            raise SchemeValidationError(f"unparsable {role.value}: {e}") from e
        if key.get('role') != role.value:
            raise ProtocolError(f"{role.value} frame does not contain that key")
        if key.get('fingerprint') != self.parameters_fingerprint():
            raise ProtocolError(f"{role.value} was generated under different parameters")
        self._roles.add(role)

    def has_key(self, role: KeyRole) -> bool:
        return role in self._roles

    def parameters_fingerprint(self) -> str:
        if self._params is None:
            raise ProtocolError("no scheme context")
        blob = json.dumps(self._params, sort_keys=True).encode()
        return hashlib.sha256(blob).hexdigest()[:16]

    @property
    def slot_count(self) -> int:
        return self._slots

    @property
    def plain_modulus(self) -> int:
        return self._params['plain_modulus']

    @property
    def can_decrypt(self) -> bool:
        return self._secret

    # encoding

    def _centered(self, value: int) -> int:
        t = self.plain_modulus
        value %= t
        return value - t if value > t // 2 else value

    def encode(self, values):
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
        return ClearValue(int(v) for v in values)

    def decode(self, plaintext):
        return list(plaintext.values)

    def encrypt(self, plaintext):
        if KeyRole.PUBLIC_KEY not in self._roles:
            raise ProtocolError("encryption requires the public key")
        return ClearValue(plaintext.values, encrypted=True)

    def decrypt(self, encrypted):
        if not self._secret:
            raise ValueError("Cannot decrypt: context does not contain secret key")
        return ClearValue(encrypted.values)

    # evaluation

    def _combine(self, a, b, fn, reduced=True):
        left, right = a.values, b.values
        if len(right) == 1 and len(left) > 1 and not b.encrypted:
            right = right * len(left)
        if len(left) != len(right):
            raise SchemeValidationError(f"{len(right)} slots cannot combine with {len(left)} slots")
        return ClearValue((self._centered(fn(x, y)) for x, y in zip(left, right)),
                          encrypted=True, reduced=reduced)

    def add(self, a, b):
        return self._combine(a, b, lambda x, y: x + y)

    add_plain = add

    def sub(self, a, b):
        return self._combine(a, b, lambda x, y: x - y)

    sub_plain = sub

    def multiply(self, a, b):
        if not self.has_key(KeyRole.RELIN_KEYS):
            raise ProtocolError("ciphertext multiplication requires the relin_keys key role")
        return self._combine(a, b, lambda x, y: x * y, reduced=False)

    def multiply_plain(self, a, plaintext):
        return self._combine(a, plaintext, lambda x, y: x * y)

    def reduce(self, a):
        if not self.has_key(KeyRole.RELIN_KEYS):
            raise ProtocolError("relinearization requires the relin_keys key role")
        return ClearValue(a.values, encrypted=True)

    def sum_slots(self, a):
        if not self.has_key(KeyRole.GALOIS_KEYS):
            raise ProtocolError("slot summation requires the galois_keys key role")
        return ClearValue([self._centered(sum(a.values))], encrypted=True)

    # serialization

    def serialize_encrypted(self, encrypted) -> bytes:
        return json.dumps({'ct': encrypted.values}).encode()

    def deserialize_encrypted(self, blob: bytes):
        try:
            return ClearValue(json.loads(blob)['ct'], encrypted=True)
        except (ValueError, KeyError, TypeError) as e:
            raise SchemeValidationError(f"malformed ciphertext: {e}") from e

    def serialize_plaintext(self, plaintext) -> bytes:
        return json.dumps({'pt': plaintext.values}).encode()

    def deserialize_plaintext(self, blob: bytes):
        try:
            return self.encode(json.loads(blob)['pt'])
        except (ValueError, KeyError, TypeError) as e:
            raise SchemeValidationError(f"malformed plaintext: {e}") from e


async def open_loopback(max_frame_size: int = 1024 * 1024, io_timeout: float = 2.0):
    """Two framed channels joined over a local TCP connection"""
    accepted = asyncio.get_running_loop().create_future()

    async def on_connect(reader, writer):
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    peer_reader, peer_writer = await accepted

    client = FramedChannel(reader, writer, max_frame_size=max_frame_size, io_timeout=io_timeout)
    peer = FramedChannel(peer_reader, peer_writer, max_frame_size=max_frame_size, io_timeout=io_timeout)
    return client, peer, server


@pytest.fixture
def config():
    return ExchangeConfig(port=0, io_timeout=5.0, connect_timeout=5.0)


@pytest.fixture
def audit():
    return SessionAuditLog()


@pytest.fixture
def adapter_factory():
    return ClearTextPrimitives
