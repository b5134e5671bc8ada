"""
Session Variants
================
The fixed input/output shapes the compute party supports. Both ends build
the registry from the same configuration, so a variant name in an envelope
identifies exactly one DAG.
"""

from decimal import Decimal
from typing import Dict, List

from .errors import ProtocolError
from .pipeline import (
    Add, InputKind, InputLayout, InputSpec, MulConstant, PipelineDefinition,
    Reduce, Sub, SumSlots,
)
from .primitives import KeyRole


BUDGET_GOAL = "budget_goal"
SAVINGS_PLAN = "savings_plan"
ITEMIZED_BUDGET = "itemized_budget"

DEFAULT_SAVINGS_RATE = Decimal("0.15")


def budget_goal() -> PipelineDefinition:
    """Expenses, net income and distance to a stated savings goal"""
    return PipelineDefinition(
        name=BUDGET_GOAL,
        description="Totals expenses and compares net income with a savings goal",
        inputs=[
            InputSpec("total_income", description="Sum of all income sources"),
            InputSpec("savings_goal", kind=InputKind.PLAINTEXT,
                      description="Stated goal amount (public)"),
            InputSpec("essential_expenses"),
            InputSpec("non_essential_expenses"),
        ],
        nodes=[
            Add("total_expenses", "essential_expenses", "non_essential_expenses"),
            Sub("net_income", "total_income", "total_expenses"),
            Sub("goal_difference", "net_income", "savings_goal"),
        ],
        outputs=["total_expenses", "net_income", "goal_difference"],
        key_roles=[KeyRole.PUBLIC_KEY, KeyRole.RELIN_KEYS],
    )


def savings_plan(savings_rate: Decimal = DEFAULT_SAVINGS_RATE) -> PipelineDefinition:
    """Slot-wise net income plus a savings contribution at a fixed rate"""
    return PipelineDefinition(
        name=SAVINGS_PLAN,
        description=f"Net income per line and {savings_rate * 100}% savings contribution",
        inputs=[
            InputSpec("income", layout=InputLayout.SLOTS, description="Income lines"),
            InputSpec("expense", layout=InputLayout.SLOTS, description="Expense lines"),
        ],
        constants={'savings_rate': savings_rate},
        nodes=[
            Sub("net_income", "income", "expense"),
            MulConstant("savings_product", "income", "savings_rate"),
            Reduce("savings_contribution", "savings_product"),
        ],
        outputs=["net_income", "savings_contribution"],
        key_roles=[KeyRole.PUBLIC_KEY, KeyRole.RELIN_KEYS],
    )


def itemized_budget() -> PipelineDefinition:
    """Totals itemised lines on the compute side using the rotation key"""
    return PipelineDefinition(
        name=ITEMIZED_BUDGET,
        description="Homomorphic totals of itemised income and expenses against a goal",
        inputs=[
            InputSpec("income_items", layout=InputLayout.SLOTS),
            InputSpec("expense_items", layout=InputLayout.SLOTS),
            InputSpec("savings_goal", kind=InputKind.PLAINTEXT),
        ],
        nodes=[
            SumSlots("total_income", "income_items"),
            SumSlots("total_expenses", "expense_items"),
            Sub("net_income", "total_income", "total_expenses"),
            Sub("goal_difference", "net_income", "savings_goal"),
        ],
        outputs=["total_income", "total_expenses", "net_income", "goal_difference"],
        key_roles=[KeyRole.PUBLIC_KEY, KeyRole.RELIN_KEYS, KeyRole.GALOIS_KEYS],
    )


def build_registry(savings_rate: Decimal = DEFAULT_SAVINGS_RATE) -> Dict[str, PipelineDefinition]:
    return {
        BUDGET_GOAL: budget_goal(),
        SAVINGS_PLAN: savings_plan(savings_rate),
        ITEMIZED_BUDGET: itemized_budget(),
    }


def get_variant(registry: Dict[str, PipelineDefinition], name: str) -> PipelineDefinition:
    try:
        return registry[name]
    except KeyError:
        raise ProtocolError(f"unsupported session variant {name!r}")


def list_variants(registry: Dict[str, PipelineDefinition]) -> List[dict]:
    return [definition.describe() for definition in registry.values()]
