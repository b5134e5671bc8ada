"""
Evaluation Pipeline
===================
Declarative DAGs of homomorphic operations and one generic evaluator.

A ``PipelineDefinition`` lists named inputs, compute-side constants and a
sequence of typed nodes in topological order. It is validated once, when
constructed: every operand must be defined earlier, exponents are
propagated statically (``ScaleMismatch`` on disagreement) and a
ciphertext product must be reduced before it is multiplied again.

The same definition runs over two backends:
- ``EncryptedBackend``: ciphertexts through the primitive adapter
  (compute party)
- ``ReferenceBackend``: plain ``ScaledAmount`` slots through the codec
  (owner-side expected values)
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import PipelineDefinitionError, ProtocolError
from .fixed_point import (
    FixedPointCodec, ScaledAmount, combine_add, combine_mul, combine_sub,
    require_same_scale,
)
from .primitives import KeyRole, PrimitiveAdapter, ordered_roles


class InputKind(Enum):
    ENCRYPTED = "encrypted"
    PLAINTEXT = "plaintext"


class InputLayout(Enum):
    """How the owner lays entered lines into slots"""
    TOTAL = "total"   # lines totalled locally into slot 0
    SLOTS = "slots"   # one line per slot, padded to a common length


@dataclass(frozen=True)
class InputSpec:
    """One input frame expected by a pipeline, in wire order"""
    name: str
    kind: InputKind = InputKind.ENCRYPTED
    layout: InputLayout = InputLayout.TOTAL
    exponent: int = 1
    description: str = ""

    @property
    def encrypted(self) -> bool:
        return self.kind is InputKind.ENCRYPTED


@dataclass(frozen=True)
class ValueInfo:
    """Static facts about a named value in the DAG"""
    exponent: int
    encrypted: bool
    reduced: bool = True


# ==================== NODES ====================

@dataclass(frozen=True)
class Add:
    output: str
    left: str
    right: str

    def operands(self) -> Tuple[str, ...]:
        return (self.left, self.right)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        left, right = _encrypted_operand(self, info, self.left), info[self.right]
        require_same_scale(left.exponent, right.exponent, "add")
        return ValueInfo(left.exponent, True, left.reduced and right.reduced)

    def apply(self, backend, values, info):
        if info[self.right].encrypted:
            return backend.add(values[self.left], values[self.right])
        return backend.add_plain(values[self.left], values[self.right])


@dataclass(frozen=True)
class Sub:
    output: str
    left: str
    right: str

    def operands(self) -> Tuple[str, ...]:
        return (self.left, self.right)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        left, right = _encrypted_operand(self, info, self.left), info[self.right]
        require_same_scale(left.exponent, right.exponent, "subtract")
        return ValueInfo(left.exponent, True, left.reduced and right.reduced)

    def apply(self, backend, values, info):
        if info[self.right].encrypted:
            return backend.sub(values[self.left], values[self.right])
        return backend.sub_plain(values[self.left], values[self.right])


@dataclass(frozen=True)
class Mul:
    """Ciphertext by ciphertext; the result must pass through Reduce"""
    output: str
    left: str
    right: str

    def operands(self) -> Tuple[str, ...]:
        return (self.left, self.right)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        _require_role(self, roles, KeyRole.RELIN_KEYS)
        left = _multiplicand(self, info, self.left)
        right = _multiplicand(self, info, self.right)
        return ValueInfo(left.exponent + right.exponent, True, reduced=False)

    def apply(self, backend, values, info):
        return backend.multiply(values[self.left], values[self.right])


@dataclass(frozen=True)
class MulConstant:
    """Ciphertext by plaintext (input frame or compute-side constant)"""
    output: str
    operand: str
    constant: str

    def operands(self) -> Tuple[str, ...]:
        return (self.operand, self.constant)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        operand = _multiplicand(self, info, self.operand)
        constant = info[self.constant]
        if constant.encrypted:
            raise PipelineDefinitionError(
                f"{self.output}: {self.constant} is encrypted; use Mul"
            )
        return ValueInfo(operand.exponent + constant.exponent, True, operand.reduced)

    def apply(self, backend, values, info):
        return backend.multiply_plain(values[self.operand], values[self.constant])


@dataclass(frozen=True)
class Reduce:
    output: str
    operand: str

    def operands(self) -> Tuple[str, ...]:
        return (self.operand,)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        _require_role(self, roles, KeyRole.RELIN_KEYS)
        operand = _encrypted_operand(self, info, self.operand)
        return ValueInfo(operand.exponent, True, reduced=True)

    def apply(self, backend, values, info):
        return backend.reduce(values[self.operand])


@dataclass(frozen=True)
class SumSlots:
    """Total all slots of a ciphertext into a single slot"""
    output: str
    operand: str

    def operands(self) -> Tuple[str, ...]:
        return (self.operand,)

    def infer(self, info: Mapping[str, ValueInfo], roles) -> ValueInfo:
        _require_role(self, roles, KeyRole.GALOIS_KEYS)
        operand = _encrypted_operand(self, info, self.operand)
        return ValueInfo(operand.exponent, True, operand.reduced)

    def apply(self, backend, values, info):
        return backend.sum_slots(values[self.operand])


Node = Union[Add, Sub, Mul, MulConstant, Reduce, SumSlots]


def _encrypted_operand(node, info: Mapping[str, ValueInfo], name: str) -> ValueInfo:
    value = info[name]
    if not value.encrypted:
        raise PipelineDefinitionError(
            f"{node.output}: operand {name} must be encrypted"
        )
    return value


def _multiplicand(node, info: Mapping[str, ValueInfo], name: str) -> ValueInfo:
    value = _encrypted_operand(node, info, name)
    if not value.reduced:
        raise PipelineDefinitionError(
            f"{node.output}: {name} is an unreduced product; Reduce it before multiplying"
        )
    return value


def _require_role(node, roles, role: KeyRole):
    if role not in roles:
        raise PipelineDefinitionError(
            f"{node.output}: {type(node).__name__} needs the {role.value} key role"
        )


# ==================== DEFINITION ====================

class PipelineDefinition:
    """
    A session variant's fixed arithmetic DAG.

    Attributes:
        name: Variant name carried in every envelope
        inputs: Input frames in wire order
        constants: Compute-side public constants (decimal, exponent 1)
        nodes: Operations in topological order
        outputs: Result frames in wire order
        key_roles: Key roles the handshake transfers, in wire order
        info: Static ValueInfo for every named value
    """

    def __init__(self,
                 name: str,
                 inputs: Sequence[InputSpec],
                 nodes: Sequence[Node],
                 outputs: Sequence[str],
                 key_roles: Sequence[KeyRole] = (KeyRole.PUBLIC_KEY, KeyRole.RELIN_KEYS),
                 constants: Optional[Mapping[str, Decimal]] = None,
                 description: str = ""):
        self.name = name
        self.inputs = tuple(inputs)
        self.nodes = tuple(nodes)
        self.outputs = tuple(outputs)
        self.key_roles = tuple(ordered_roles(key_roles))
        self.constants = dict(constants or {})
        self.description = description

        if KeyRole.PUBLIC_KEY not in self.key_roles:
            raise PipelineDefinitionError(f"{name}: the public key role is mandatory")
        self.info = self._validate()

    def _validate(self) -> Dict[str, ValueInfo]:
        info: Dict[str, ValueInfo] = {}

        def define(value_name: str, value: ValueInfo):
            if value_name in info:
                raise PipelineDefinitionError(f"{self.name}: duplicate value {value_name}")
            info[value_name] = value

        for spec in self.inputs:
            define(spec.name, ValueInfo(spec.exponent, spec.encrypted))
        for constant in self.constants:
            define(constant, ValueInfo(1, False))

        for node in self.nodes:
            for operand in node.operands():
                if operand not in info:
                    raise PipelineDefinitionError(
                        f"{self.name}: {node.output} uses undefined value {operand}"
                    )
            define(node.output, node.infer(info, self.key_roles))

        if not self.outputs:
            raise PipelineDefinitionError(f"{self.name}: no outputs")
        for output in self.outputs:
            if output not in info:
                raise PipelineDefinitionError(f"{self.name}: unknown output {output}")
            if not info[output].encrypted:
                raise PipelineDefinitionError(f"{self.name}: output {output} is not encrypted")
        return info

    def output_exponent(self, name: str) -> int:
        return self.info[name].exponent

    def input_spec(self, name: str) -> InputSpec:
        for spec in self.inputs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def describe(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'key_roles': [r.value for r in self.key_roles],
            'inputs': [
                {'name': s.name, 'kind': s.kind.value, 'layout': s.layout.value,
                 'exponent': s.exponent}
                for s in self.inputs
            ],
            'constants': {k: str(v) for k, v in self.constants.items()},
            'operations': [
                {'op': type(n).__name__, 'output': n.output, 'operands': list(n.operands())}
                for n in self.nodes
            ],
            'outputs': [
                {'name': o, 'exponent': self.output_exponent(o)} for o in self.outputs
            ],
        }


# ==================== BACKENDS ====================

class EvaluationBackend(ABC):
    """Arithmetic the evaluator needs; one instance per evaluation"""

    @abstractmethod
    def constant(self, amount: Decimal) -> Any: ...

    @abstractmethod
    def add(self, a, b): ...

    @abstractmethod
    def add_plain(self, a, p): ...

    @abstractmethod
    def sub(self, a, b): ...

    @abstractmethod
    def sub_plain(self, a, p): ...

    @abstractmethod
    def multiply(self, a, b): ...

    @abstractmethod
    def multiply_plain(self, a, p): ...

    @abstractmethod
    def reduce(self, a): ...

    @abstractmethod
    def sum_slots(self, a): ...


class EncryptedBackend(EvaluationBackend):
    """Delegates every node to the session's primitive adapter"""

    def __init__(self, adapter: PrimitiveAdapter, codec: FixedPointCodec):
        self.adapter = adapter
        self.codec = codec

    def constant(self, amount: Decimal):
        return self.adapter.encode([self.codec.encode(amount).value])

    def add(self, a, b):
        return self.adapter.add(a, b)

    def add_plain(self, a, p):
        return self.adapter.add_plain(a, p)

    def sub(self, a, b):
        return self.adapter.sub(a, b)

    def sub_plain(self, a, p):
        return self.adapter.sub_plain(a, p)

    def multiply(self, a, b):
        return self.adapter.multiply(a, b)

    def multiply_plain(self, a, p):
        return self.adapter.multiply_plain(a, p)

    def reduce(self, a):
        return self.adapter.reduce(a)

    def sum_slots(self, a):
        return self.adapter.sum_slots(a)


Slots = List[ScaledAmount]


def _zip_slots(a: Slots, b: Slots) -> List[Tuple[ScaledAmount, ScaledAmount]]:
    if len(b) == 1 and len(a) > 1:
        b = b * len(a)
    elif len(a) == 1 and len(b) > 1:
        a = a * len(b)
    if len(a) != len(b):
        raise ProtocolError(f"cannot combine {len(a)} slots with {len(b)} slots")
    return list(zip(a, b))


class ReferenceBackend(EvaluationBackend):
    """Evaluates on plain ScaledAmount slots with the codec's exponent rules"""

    def __init__(self, codec: FixedPointCodec):
        self.codec = codec

    def constant(self, amount: Decimal) -> Slots:
        return [self.codec.encode(amount)]

    def add(self, a: Slots, b: Slots) -> Slots:
        return [combine_add(x, y) for x, y in _zip_slots(a, b)]

    add_plain = add

    def sub(self, a: Slots, b: Slots) -> Slots:
        return [combine_sub(x, y) for x, y in _zip_slots(a, b)]

    sub_plain = sub

    def multiply(self, a: Slots, b: Slots) -> Slots:
        return [combine_mul(x, y) for x, y in _zip_slots(a, b)]

    multiply_plain = multiply

    def reduce(self, a: Slots) -> Slots:
        return a

    def sum_slots(self, a: Slots) -> Slots:
        total = a[0]
        for amount in a[1:]:
            total = combine_add(total, amount)
        return [total]


# ==================== EVALUATOR ====================

@dataclass
class EvaluationResult:
    """Outputs of one pipeline run, in wire order"""
    variant: str
    outputs: Dict[str, Any]
    exponents: Dict[str, int]
    operation_count: int
    computation_time_ms: float
    trace: List[str] = field(default_factory=list)

    def ordered(self) -> List[Tuple[str, Any, int]]:
        return [(name, value, self.exponents[name]) for name, value in self.outputs.items()]


def evaluate(definition: PipelineDefinition,
             inputs: Mapping[str, Any],
             backend: EvaluationBackend) -> EvaluationResult:
    """
    Run every node of the definition once, in order.

    Any failure propagates: there are no partial results.
    """
    start_time = time.time()
    values: Dict[str, Any] = {}

    for spec in definition.inputs:
        if spec.name not in inputs:
            raise ProtocolError(f"{definition.name}: missing input {spec.name}")
        values[spec.name] = inputs[spec.name]
    for name, amount in definition.constants.items():
        values[name] = backend.constant(amount)

    trace = []
    for node in definition.nodes:
        values[node.output] = node.apply(backend, values, definition.info)
        trace.append(f"{type(node).__name__}({', '.join(node.operands())}) -> {node.output}")

    outputs = {name: values[name] for name in definition.outputs}
    return EvaluationResult(
        variant=definition.name,
        outputs=outputs,
        exponents={name: definition.output_exponent(name) for name in definition.outputs},
        operation_count=len(definition.nodes),
        computation_time_ms=(time.time() - start_time) * 1000,
        trace=trace,
    )
