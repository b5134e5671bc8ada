"""
Session Handshake
=================
One-time transfer of scheme parameters and key material, owner to compute
party, in a fixed order:

    Init -> ParamsSent -> KeysSent(1..M) -> Ready

1. scheme parameters
2. public (encryption) key
3. relinearization keys
4. Galois (rotation) keys, only for variants that need them

The variant named in the parameters envelope fixes which key roles follow;
every later envelope must name the same variant. Any missing, unparsable or
mismatching frame is fatal and the compute party never reaches Ready.
"""

from enum import Enum
from typing import TYPE_CHECKING, Dict

from finance_core.errors import ExchangeError, ProtocolError
from finance_core.primitives import KeyRole, SchemeSettings
from finance_core.session_logger import DataType, OperationType
from finance_core.variants import get_variant

from .envelope import Envelope, MessageRole

if TYPE_CHECKING:
    from .session import ComputeSession, OwnerSession


KEY_MESSAGES: Dict[KeyRole, MessageRole] = {
    KeyRole.PUBLIC_KEY: MessageRole.PUBLIC_KEY,
    KeyRole.RELIN_KEYS: MessageRole.RELIN_KEYS,
    KeyRole.GALOIS_KEYS: MessageRole.GALOIS_KEYS,
}


class HandshakeState(Enum):
    INIT = "init"
    PARAMS_SENT = "params_sent"
    KEYS_SENT = "keys_sent"
    READY = "ready"
    FAILED = "failed"


class Handshake:
    """
    Strictly ordered handshake progress, tracked identically on both ends
    ("sent" on the compute side means "received and loaded").
    """

    def __init__(self):
        self.state = HandshakeState.INIT
        self.keys_done = 0
        self.keys_total = 0

    @property
    def ready(self) -> bool:
        return self.state is HandshakeState.READY

    def params_sent(self, keys_total: int):
        self._require(HandshakeState.INIT)
        self.keys_total = keys_total
        self.state = HandshakeState.PARAMS_SENT

    def key_sent(self):
        if self.state not in (HandshakeState.PARAMS_SENT, HandshakeState.KEYS_SENT):
            raise ProtocolError(f"key frame out of order in state {self.state.value}")
        if self.keys_done >= self.keys_total:
            raise ProtocolError("more key frames than the variant defines")
        self.keys_done += 1
        self.state = HandshakeState.KEYS_SENT

    def complete(self):
        self._require(HandshakeState.KEYS_SENT)
        if self.keys_done != self.keys_total:
            raise ProtocolError(f"only {self.keys_done} of {self.keys_total} key frames exchanged")
        self.state = HandshakeState.READY

    def fail(self):
        self.state = HandshakeState.FAILED

    def require_ready(self):
        if not self.ready:
            raise ProtocolError(f"session not ready (handshake {self.describe()})")

    def describe(self) -> str:
        if self.state is HandshakeState.KEYS_SENT:
            return f"keys_sent({self.keys_done} of {self.keys_total})"
        return self.state.value

    def _require(self, expected: HandshakeState):
        if self.state is not expected:
            raise ProtocolError(
                f"handshake step requires state {expected.value}, currently {self.state.value}"
            )


async def owner_handshake(session: 'OwnerSession', settings: SchemeSettings) -> None:
    """Generate keys and send parameters plus every key role of the variant"""
    definition = session.definition
    adapter = session.adapter
    try:
        await session.offload(adapter.generate_keys, settings, definition.key_roles)
        session.record(
            OperationType.GENERATE_KEYS,
            [DataType.SECRET_KEY, DataType.KEY_MATERIAL],
            roles=[r.value for r in definition.key_roles],
        )

        parameters = await session.offload(adapter.export_parameters)
        await session.send(Envelope.wrap(MessageRole.SCHEME_PARAMETERS, definition.name, parameters))
        session.handshake.params_sent(len(definition.key_roles))
        session.record(OperationType.TRANSMIT, [DataType.PUBLIC_PARAM], message="scheme_parameters")

        for role in definition.key_roles:
            key = await session.offload(adapter.export_key, role)
            envelope = await session.offload(Envelope.wrap, KEY_MESSAGES[role], definition.name, key)
            await session.send(envelope)
            session.handshake.key_sent()
            session.record(OperationType.TRANSMIT, [DataType.KEY_MATERIAL], message=role.value)

        session.handshake.complete()
    except ExchangeError:
        session.handshake.fail()
        raise


async def compute_handshake(session: 'ComputeSession', registry) -> None:
    """
    Receive parameters and keys in protocol order.

    Sets ``session.definition`` from the variant the owner declared.
    """
    adapter = session.adapter
    try:
        envelope = (await session.receive()).expect(MessageRole.SCHEME_PARAMETERS)
        definition = get_variant(registry, envelope.variant)
        session.definition = definition

        parameters = await session.offload(envelope.data)
        await session.offload(adapter.load_parameters, parameters)
        session.handshake.params_sent(len(definition.key_roles))
        session.record(
            OperationType.LOAD_PARAMETERS,
            [DataType.PUBLIC_PARAM],
            variant=definition.name,
            fingerprint=adapter.parameters_fingerprint(),
        )

        for role in definition.key_roles:
            envelope = (await session.receive()).expect(KEY_MESSAGES[role], definition.name)
            key = await session.offload(envelope.data)
            await session.offload(adapter.load_key, role, key)
            session.handshake.key_sent()
            session.record(OperationType.LOAD_KEY, [DataType.KEY_MATERIAL], role=role.value)

        session.handshake.complete()
    except ExchangeError:
        session.handshake.fail()
        raise
