"""
Finance Core - Confidential Budget Computation
==============================================
Fixed-point encoding, the primitive adapter contract, evaluation DAGs and
the audit trail shared by the data owner and the compute party.

The TenSEAL backend lives in ``finance_core.tenseal_backend`` and is
imported where a session is created.
"""

from .config import ExchangeConfig, DEFAULT_PLAIN_MODULUS
from .errors import (
    ExchangeError, TransportError, ProtocolError, PipelineDefinitionError,
    ScaleMismatch, SchemeValidationError,
)
from .fixed_point import (
    ScaledAmount, FixedPointCodec, to_scaled, from_scaled,
    combine_add, combine_sub, combine_mul,
)
from .primitives import KeyRole, PrimitiveAdapter, SchemeSettings
from .pipeline import (
    PipelineDefinition, InputSpec, InputKind, InputLayout,
    Add, Sub, Mul, MulConstant, Reduce, SumSlots,
    EncryptedBackend, ReferenceBackend, EvaluationResult, evaluate,
)
from .variants import (
    BUDGET_GOAL, SAVINGS_PLAN, ITEMIZED_BUDGET, build_registry, get_variant,
)
from .session_logger import SessionAuditLog, DataType, OperationType

__all__ = [
    # Configuration and errors
    'ExchangeConfig', 'DEFAULT_PLAIN_MODULUS',
    'ExchangeError', 'TransportError', 'ProtocolError', 'PipelineDefinitionError',
    'ScaleMismatch', 'SchemeValidationError',

    # Fixed-point codec
    'ScaledAmount', 'FixedPointCodec', 'to_scaled', 'from_scaled',
    'combine_add', 'combine_sub', 'combine_mul',

    # Primitive contract
    'KeyRole', 'PrimitiveAdapter', 'SchemeSettings',

    # Evaluation pipeline
    'PipelineDefinition', 'InputSpec', 'InputKind', 'InputLayout',
    'Add', 'Sub', 'Mul', 'MulConstant', 'Reduce', 'SumSlots',
    'EncryptedBackend', 'ReferenceBackend', 'EvaluationResult', 'evaluate',
    'BUDGET_GOAL', 'SAVINGS_PLAN', 'ITEMIZED_BUDGET', 'build_registry', 'get_variant',

    # Audit
    'SessionAuditLog', 'DataType', 'OperationType',
]

__version__ = '1.0.0'
