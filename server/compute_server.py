"""
Compute Party Server
====================
Accepts owner connections and runs each one as an independent session:

1. Handshake: scheme parameters and key material
2. Receive the variant's encrypted / public inputs
3. Evaluate the variant's DAG on ciphertext
4. Return the encrypted results in the variant's order

The server never holds a secret key and never sees owner plaintext. Any
failure ends the session: an abort notice is sent when the channel still
works, then the connection is closed. No partial results are delivered.
"""

import asyncio
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from finance_core.config import ExchangeConfig
from finance_core.errors import ExchangeError, ScaleMismatch, TransportError
from finance_core.fixed_point import FixedPointCodec
from finance_core.pipeline import EncryptedBackend, EvaluationResult, evaluate
from finance_core.primitives import PrimitiveAdapter, SchemeSettings
from finance_core.session_logger import DataType, OperationType, SessionAuditLog
from finance_core.variants import build_registry

from exchange.envelope import Envelope, MessageRole
from exchange.framing import FramedChannel
from exchange.handshake import compute_handshake
from exchange.session import ComputeSession


@dataclass
class SessionRecord:
    """Bookkeeping for one served session (no cryptographic state)"""
    session_id: str
    peer: str
    started_at: str
    variant: str = ""
    status: str = "running"
    handshake: str = "init"
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    inputs_received: int = 0
    results_sent: int = 0
    computation_time_ms: float = 0.0
    duration_ms: float = 0.0
    frames_received: int = 0
    frames_sent: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ComputeServer:
    """
    Asyncio TCP server for the compute party.

    Each accepted connection gets its own task, adapter and session; a
    semaphore bounds how many run at once.
    """

    def __init__(self,
                 config: Optional[ExchangeConfig] = None,
                 adapter_factory: Optional[Callable[[], PrimitiveAdapter]] = None,
                 audit_log: Optional[SessionAuditLog] = None,
                 registry: Optional[dict] = None,
                 history_size: int = 200):
        self.config = config or ExchangeConfig()
        self.adapter_factory = adapter_factory or self._tenseal_adapter
        self.audit = audit_log if audit_log is not None else SessionAuditLog()
        self.registry = registry or build_registry(self.config.savings_rate)
        self.codec = FixedPointCodec(self.config.scale_factor, self.config.plain_modulus)

        self.records: deque = deque(maxlen=history_size)
        self.active: Dict[str, SessionRecord] = {}
        self.sessions_completed = 0
        self.sessions_failed = 0
        self.server_start_time = datetime.now()

        self._server: Optional[asyncio.AbstractServer] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _tenseal_adapter(self) -> PrimitiveAdapter:
        from finance_core.tenseal_backend import TenSEALPrimitives
        return TenSEALPrimitives(expected=SchemeSettings.from_config(self.config))

    # ==================== LIFECYCLE ====================

    async def start(self):
        self._semaphore = asyncio.Semaphore(self.config.max_sessions)
        self._server = await asyncio.start_server(
            self.handle_connection, self.config.host, self.config.port
        )
        host, port = self.address
        print(f"🔐 Compute party listening on {host}:{port}")
        print(f"   Variants: {', '.join(self.registry)}")

    @property
    def address(self):
        if self._server is None or not self._server.sockets:
            return self.config.host, self.config.port
        return self._server.sockets[0].getsockname()[:2]

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            print("🛑 Compute party stopped")

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        channel = FramedChannel.from_config(reader, writer, self.config)
        async with self._semaphore:
            await self.run_session(channel)

    # ==================== SESSION ====================

    async def run_session(self, channel: FramedChannel) -> SessionRecord:
        """Serve one owner from handshake to results; never raises"""
        session = ComputeSession(
            channel=channel,
            adapter=self.adapter_factory(),
            codec=self.codec,
            audit=self.audit,
        )
        record = SessionRecord(
            session_id=session.session_id,
            peer=channel.peer,
            started_at=session.started_at,
        )
        self.active[session.session_id] = record
        print(f"📥 Session {session.session_id}: connection from {record.peer}")

        try:
            await compute_handshake(session, self.registry)
            record.variant = session.variant
            print(f"🔑 Session {session.session_id}: {session.variant} keys loaded")

            await self._receive_inputs(session, record)
            result = await self._evaluate(session)
            record.computation_time_ms = result.computation_time_ms
            await self._send_results(session, result, record)

            record.status = "completed"
            self.sessions_completed += 1
            print(f"✓ Session {session.session_id}: {record.results_sent} encrypted results returned")
        except ExchangeError as e:
            self._fail(session, record, e.kind, e.message)
            if not isinstance(e, TransportError):
                await self._send_abort(session, e)
        except Exception as e:
            self._fail(session, record, "internal", str(e))
            await self._send_abort(session, e)
        finally:
            record.variant = session.variant
            record.handshake = session.handshake.describe()
            record.duration_ms = round(session.elapsed_ms, 2)
            record.frames_received = channel.frames_received
            record.frames_sent = channel.frames_sent
            await channel.close()
            self.active.pop(session.session_id, None)
            self.records.append(record)

        return record

    async def _receive_inputs(self, session: ComputeSession, record: SessionRecord):
        session.handshake.require_ready()
        definition = session.definition
        adapter = session.adapter

        for spec in definition.inputs:
            role = MessageRole.ENCRYPTED_INPUT if spec.encrypted else MessageRole.PLAINTEXT_INPUT
            envelope = (await session.receive()).expect(role, definition.name, spec.name)
            if envelope.scale_exponent != spec.exponent:
                raise ScaleMismatch(
                    f"input {spec.name} arrived at exponent {envelope.scale_exponent}, "
                    f"pipeline expects {spec.exponent}",
                    left=envelope.scale_exponent, right=spec.exponent,
                )

            blob = await session.offload(envelope.data)
            if spec.encrypted:
                session.inputs[spec.name] = await session.offload(adapter.deserialize_encrypted, blob)
                data_type = DataType.CIPHERTEXT
            else:
                session.inputs[spec.name] = await session.offload(adapter.deserialize_plaintext, blob)
                data_type = DataType.PUBLIC_PARAM
            record.inputs_received += 1
            session.record(OperationType.RECEIVE, [data_type], input=spec.name)

    async def _evaluate(self, session: ComputeSession) -> EvaluationResult:
        session.handshake.require_ready()
        backend = EncryptedBackend(session.adapter, session.codec)
        result = await session.offload(evaluate, session.definition, session.inputs, backend)

        data_types = [DataType.CIPHERTEXT]
        if session.definition.constants or any(
                not spec.encrypted for spec in session.definition.inputs):
            data_types.append(DataType.PUBLIC_PARAM)
        session.record(
            OperationType.EVALUATE,
            data_types,
            operations=result.trace,
            computation_time_ms=round(result.computation_time_ms, 2),
        )
        return result

    async def _send_results(self, session: ComputeSession, result: EvaluationResult,
                            record: SessionRecord):
        # Serialize everything first so a failure cannot leave a partial result stream
        envelopes: List[Envelope] = await session.offload(self._wrap_results, session, result)
        for envelope in envelopes:
            await session.send(envelope)
            record.results_sent += 1
            session.record(OperationType.TRANSMIT, [DataType.CIPHERTEXT], result=envelope.label)

    def _wrap_results(self, session: ComputeSession, result: EvaluationResult) -> List[Envelope]:
        return [
            Envelope.wrap(
                MessageRole.ENCRYPTED_RESULT,
                session.variant,
                session.adapter.serialize_encrypted(value),
                label=name,
                scale_exponent=exponent,
            )
            for name, value, exponent in result.ordered()
        ]

    def _fail(self, session: ComputeSession, record: SessionRecord, kind: str, message: str):
        record.status = "failed"
        record.error_kind = kind
        record.error_message = message
        self.sessions_failed += 1
        session.record(OperationType.ABORT, [DataType.METADATA], kind=kind, message=message)
        print(f"✗ Session {session.session_id}: aborted ({kind}) {message}")

    async def _send_abort(self, session: ComputeSession, error: Exception):
        if session.channel.closed:
            return
        try:
            await session.send(Envelope.abort(session.variant, error))
        except TransportError:
            # Peer already gone; closing the channel is the only signal left
            pass

    # ==================== STATUS ====================

    def get_status(self) -> dict:
        uptime = (datetime.now() - self.server_start_time).total_seconds()
        host, port = self.address
        return {
            'status': 'running' if self._server is not None else 'stopped',
            'address': f"{host}:{port}",
            'uptime_seconds': round(uptime, 1),
            'active_sessions': len(self.active),
            'sessions_completed': self.sessions_completed,
            'sessions_failed': self.sessions_failed,
            'variants': list(self.registry),
            'scale_factor': self.config.scale_factor,
            'can_decrypt': False,
        }

    def get_sessions(self, limit: int = 50) -> List[dict]:
        finished = list(self.records)[-limit:]
        return [r.to_dict() for r in list(self.active.values()) + finished]
