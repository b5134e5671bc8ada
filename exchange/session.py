"""
Session Records
===============
All state of one exchange lives in an explicit session object owned by a
single task: the framed channel, the primitive adapter (scheme context and
keys), the chosen pipeline and the handshake progress. Nothing here is
shared between sessions except the append-only audit log.
"""

import asyncio
import functools
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from finance_core.fixed_point import FixedPointCodec
from finance_core.pipeline import PipelineDefinition
from finance_core.primitives import PrimitiveAdapter
from finance_core.session_logger import (
    COMPUTE, OWNER, DataType, OperationType, SessionAuditLog,
)

from .envelope import Envelope
from .framing import FramedChannel
from .handshake import Handshake


def new_session_id() -> str:
    return secrets.token_hex(6)


@dataclass
class _SessionBase:
    channel: FramedChannel
    adapter: PrimitiveAdapter
    codec: FixedPointCodec
    audit: Optional[SessionAuditLog] = None
    session_id: str = field(default_factory=new_session_id)
    handshake: Handshake = field(default_factory=Handshake)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    entity = "session"

    def __post_init__(self):
        self._t0 = time.time()

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self._t0) * 1000

    @property
    def variant(self) -> str:
        definition = getattr(self, 'definition', None)
        return definition.name if definition is not None else ""

    def record(self, operation: OperationType, data_types: List[DataType], **details):
        if self.audit is not None:
            self.audit.log(self.entity, self.session_id, operation, data_types, details)

    async def offload(self, func, *args, **kwargs):
        """Run CPU-heavy primitive work in the default executor"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def send(self, envelope: Envelope) -> None:
        await self.channel.send_frame(await self.offload(envelope.to_bytes))

    async def receive(self) -> Envelope:
        blob = await self.channel.recv_frame()
        return await self.offload(Envelope.from_bytes, blob)


@dataclass
class OwnerSession(_SessionBase):
    """Data-owner end: holds the secret key, drives the handshake"""
    definition: Optional[PipelineDefinition] = None
    entity = OWNER


@dataclass
class ComputeSession(_SessionBase):
    """Compute-party end: public/evaluation keys only"""
    definition: Optional[PipelineDefinition] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    entity = COMPUTE
