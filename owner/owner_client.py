"""
Data Owner Client
=================
The only party that ever holds the secret key. For one session it:

1. Generates keys and runs the handshake
2. Scales and encrypts its figures (public goals travel as plaintexts)
3. Receives the encrypted results in the variant's output order
4. Decrypts, descales by scale_factor ** exponent and checks every slot
   against a clear-text evaluation of the same pipeline
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from finance_core.config import ExchangeConfig
from finance_core.errors import ProtocolError, ScaleMismatch, SchemeValidationError, TransportError
from finance_core.fixed_point import FixedPointCodec, Number, ScaledAmount, to_decimal
from finance_core.pipeline import InputLayout, PipelineDefinition, ReferenceBackend, evaluate
from finance_core.primitives import PrimitiveAdapter, SchemeSettings
from finance_core.session_logger import DataType, OperationType, SessionAuditLog
from finance_core.variants import build_registry, get_variant

from exchange.envelope import Envelope, MessageRole
from exchange.framing import open_channel
from exchange.handshake import owner_handshake
from exchange.session import OwnerSession


@dataclass
class OutputReport:
    """One decrypted output"""
    name: str
    exponent: int
    scaled: List[int]
    amounts: List[Decimal]
    expected: List[Decimal]

    @property
    def matches(self) -> bool:
        return self.amounts == self.expected

    @property
    def total(self) -> Decimal:
        return sum(self.amounts, Decimal(0))

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'exponent': self.exponent,
            'scaled': self.scaled,
            'amounts': [str(a) for a in self.amounts],
            'expected': [str(a) for a in self.expected],
            'matches': self.matches,
        }


@dataclass
class BudgetReport:
    """Decrypted outcome of one session"""
    session_id: str
    variant: str
    inputs: Dict[str, List[int]]
    outputs: Dict[str, OutputReport] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    @property
    def matches(self) -> bool:
        return all(o.matches for o in self.outputs.values())

    def amounts(self, name: str) -> List[Decimal]:
        return self.outputs[name].amounts

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'variant': self.variant,
            'outputs': {name: o.to_dict() for name, o in self.outputs.items()},
            'matches': self.matches,
            'elapsed_ms': round(self.elapsed_ms, 2),
        }

    def format_lines(self) -> List[str]:
        lines = [f"Session {self.session_id} ({self.variant})"]
        for output in self.outputs.values():
            shown = ", ".join(str(a) for a in output.amounts)
            status = "✓" if output.matches else "✗ expected " + ", ".join(str(e) for e in output.expected)
            lines.append(f"   {output.name:<24} {shown}  {status}")
        return lines


def prepare_inputs(definition: PipelineDefinition,
                   figures: Mapping[str, Sequence[Number]],
                   codec: FixedPointCodec) -> Dict[str, List[int]]:
    """
    Scale entered figures into per-input slot lists.

    TOTAL inputs are totalled locally into one slot; SLOTS inputs are padded
    with zeros to a common length. Missing or empty entries count as zero.
    """
    unknown = set(figures) - {spec.name for spec in definition.inputs}
    if unknown:
        raise ValueError(f"{definition.name} has no input(s) {', '.join(sorted(unknown))}")

    prepared: Dict[str, List[int]] = {}
    for spec in definition.inputs:
        lines = list(figures.get(spec.name) or [0])
        scaled = codec.encode_many([to_decimal(line) for line in lines])
        if spec.layout is InputLayout.TOTAL:
            total = sum(scaled)
            codec.check_range(total)
            prepared[spec.name] = [total]
        else:
            prepared[spec.name] = scaled

    slot_inputs = [s.name for s in definition.inputs if s.layout is InputLayout.SLOTS]
    if slot_inputs:
        width = max(len(prepared[name]) for name in slot_inputs)
        for name in slot_inputs:
            prepared[name] = prepared[name] + [0] * (width - len(prepared[name]))
    return prepared


def expected_outputs(definition: PipelineDefinition,
                     prepared: Mapping[str, List[int]],
                     codec: FixedPointCodec) -> Dict[str, List[Decimal]]:
    """
    Clear-text evaluation of the same pipeline on the scaled inputs.

    Every output slot must fit the plaintext range: a result outside it would
    wrap inside the scheme and decrypt to a wrong amount.
    """
    inputs = {
        spec.name: [ScaledAmount(v, spec.exponent) for v in prepared[spec.name]]
        for spec in definition.inputs
    }
    result = evaluate(definition, inputs, ReferenceBackend(codec))
    for name, slots in result.outputs.items():
        for amount in slots:
            try:
                codec.check_range(amount.value)
            except SchemeValidationError as e:
                raise SchemeValidationError(f"{definition.name}: output {name} would overflow, {e}") from e
    return {
        name: [codec.decode(amount) for amount in slots]
        for name, slots in result.outputs.items()
    }


class OwnerClient:
    """Runs owner sessions against a compute party"""

    def __init__(self,
                 config: Optional[ExchangeConfig] = None,
                 adapter_factory: Optional[Callable[[], PrimitiveAdapter]] = None,
                 audit_log: Optional[SessionAuditLog] = None,
                 registry: Optional[dict] = None):
        self.config = config or ExchangeConfig()
        self.adapter_factory = adapter_factory or self._tenseal_adapter
        self.audit = audit_log
        self.registry = registry or build_registry(self.config.savings_rate)
        self.codec = FixedPointCodec(self.config.scale_factor, self.config.plain_modulus)
        self.settings = SchemeSettings.from_config(self.config)

    def _tenseal_adapter(self) -> PrimitiveAdapter:
        from finance_core.tenseal_backend import TenSEALPrimitives
        return TenSEALPrimitives()

    async def run(self,
                  variant: str,
                  figures: Mapping[str, Sequence[Number]],
                  host: Optional[str] = None,
                  port: Optional[int] = None) -> BudgetReport:
        definition = get_variant(self.registry, variant)
        prepared = prepare_inputs(definition, figures, self.codec)
        expected = expected_outputs(definition, prepared, self.codec)

        channel = await open_channel(host or self.config.host, port or self.config.port, self.config)
        session = OwnerSession(
            channel=channel,
            adapter=self.adapter_factory(),
            codec=self.codec,
            audit=self.audit,
            definition=definition,
        )
        try:
            try:
                await owner_handshake(session, self.settings)
                await self._send_inputs(session, prepared)
            except TransportError:
                # The compute party may have closed after sending an abort notice
                await self._raise_pending_abort(session)
                raise
            results = await self._receive_results(session)
        finally:
            await channel.close()

        report = BudgetReport(
            session_id=session.session_id,
            variant=definition.name,
            inputs=prepared,
            elapsed_ms=session.elapsed_ms,
        )
        for name, scaled in results.items():
            exponent = definition.output_exponent(name)
            report.outputs[name] = OutputReport(
                name=name,
                exponent=exponent,
                scaled=scaled,
                amounts=self.codec.decode_many(scaled, exponent),
                expected=expected[name],
            )
        return report

    async def _send_inputs(self, session: OwnerSession, prepared: Mapping[str, List[int]]):
        session.handshake.require_ready()
        adapter = session.adapter
        for spec in session.definition.inputs:
            plaintext = adapter.encode(prepared[spec.name])
            if spec.encrypted:
                encrypted = await session.offload(adapter.encrypt, plaintext)
                payload = await session.offload(adapter.serialize_encrypted, encrypted)
                role = MessageRole.ENCRYPTED_INPUT
                session.record(OperationType.ENCRYPT, [DataType.PLAINTEXT, DataType.CIPHERTEXT],
                               input=spec.name, slots=len(prepared[spec.name]))
                sent_type = DataType.CIPHERTEXT
            else:
                payload = adapter.serialize_plaintext(plaintext)
                role = MessageRole.PLAINTEXT_INPUT
                sent_type = DataType.PUBLIC_PARAM

            await session.send(Envelope.wrap(
                role, session.variant, payload, label=spec.name, scale_exponent=spec.exponent
            ))
            session.record(OperationType.TRANSMIT, [sent_type], input=spec.name)

    async def _receive_results(self, session: OwnerSession) -> Dict[str, List[int]]:
        definition = session.definition
        adapter = session.adapter
        results: Dict[str, List[int]] = {}
        for name in definition.outputs:
            envelope = (await session.receive()).expect(
                MessageRole.ENCRYPTED_RESULT, definition.name, name
            )
            exponent = definition.output_exponent(name)
            if envelope.scale_exponent != exponent:
                raise ScaleMismatch(
                    f"result {name} arrived at exponent {envelope.scale_exponent}, expected {exponent}",
                    left=envelope.scale_exponent, right=exponent,
                )
            session.record(OperationType.RECEIVE, [DataType.CIPHERTEXT], result=name)

            blob = await session.offload(envelope.data)
            encrypted = await session.offload(adapter.deserialize_encrypted, blob)
            results[name] = adapter.decode(await session.offload(adapter.decrypt, encrypted))
            session.record(OperationType.DECRYPT, [DataType.CIPHERTEXT, DataType.PLAINTEXT],
                           result=name)
        return results

    async def _raise_pending_abort(self, session: OwnerSession):
        if session.channel.closed:
            return
        try:
            envelope = await session.receive()
        except (TransportError, ProtocolError):
            return
        if envelope.role is MessageRole.SESSION_ABORT:
            envelope.raise_abort()


async def run_owner_session(config: ExchangeConfig,
                            variant: str,
                            figures: Mapping[str, Sequence[Number]],
                            adapter_factory: Optional[Callable[[], PrimitiveAdapter]] = None,
                            audit_log: Optional[SessionAuditLog] = None) -> BudgetReport:
    client = OwnerClient(config, adapter_factory=adapter_factory, audit_log=audit_log)
    return await client.run(variant, figures)
