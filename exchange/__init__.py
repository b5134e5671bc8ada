"""
Exchange Module - Confidential Computation Protocol
===================================================
Framed transport, tagged envelopes, explicit session records and the
parameter/key handshake shared by both ends.
"""

from .framing import FramedChannel, send_frame, recv_frame, open_channel
from .envelope import Envelope, MessageRole, PROTOCOL_VERSION
from .handshake import (
    Handshake, HandshakeState, KEY_MESSAGES, owner_handshake, compute_handshake,
)
from .session import OwnerSession, ComputeSession, new_session_id

__all__ = [
    'FramedChannel', 'send_frame', 'recv_frame', 'open_channel',
    'Envelope', 'MessageRole', 'PROTOCOL_VERSION',
    'Handshake', 'HandshakeState', 'KEY_MESSAGES', 'owner_handshake', 'compute_handshake',
    'OwnerSession', 'ComputeSession', 'new_session_id',
]
