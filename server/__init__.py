"""
Server Module - Compute Party
=============================
Evaluates budget pipelines on ciphertext for connected data owners.
"""

from .compute_server import ComputeServer, SessionRecord
from .monitor import create_monitor_app, build_monitor_server

__all__ = [
    'ComputeServer',
    'SessionRecord',
    'create_monitor_app',
    'build_monitor_server',
]
