"""
Interactive figure entry for the data owner.

Amounts are entered one per line until the sentinel ``done``; lines that
are not decimal amounts are reported and skipped.
"""

from decimal import Decimal
from typing import Callable, Dict, List

from finance_core.fixed_point import to_decimal
from finance_core.pipeline import PipelineDefinition

SENTINEL = "done"


def _read(input_fn: Callable[[str], str], prompt: str):
    try:
        return input_fn(prompt)
    except EOFError:
        return None


def prompt_amounts(label: str,
                   input_fn: Callable[[str], str] = input,
                   print_fn: Callable[..., None] = print,
                   sentinel: str = SENTINEL) -> List[Decimal]:
    """Collect amounts until the sentinel (or end of input)"""
    print_fn(f"Enter {label}, one per line ('{sentinel}' to finish):")
    amounts: List[Decimal] = []
    while True:
        line = _read(input_fn, "  > ")
        if line is None or line.strip().lower() == sentinel:
            break
        if not line.strip():
            continue
        try:
            amounts.append(to_decimal(line))
        except ValueError:
            print_fn(f"  ⚠️  Invalid amount {line.strip()!r}, skipped")
    return amounts


def prompt_single(label: str,
                  input_fn: Callable[[str], str] = input,
                  print_fn: Callable[..., None] = print) -> Decimal:
    """Ask until one valid amount is given; end of input means zero"""
    while True:
        line = _read(input_fn, f"Enter {label}: ")
        if line is None:
            return Decimal(0)
        try:
            return to_decimal(line)
        except ValueError:
            print_fn(f"  ⚠️  Invalid amount {line.strip()!r}, try again")


def prompt_figures(definition: PipelineDefinition,
                   input_fn: Callable[[str], str] = input,
                   print_fn: Callable[..., None] = print) -> Dict[str, List[Decimal]]:
    figures: Dict[str, List[Decimal]] = {}
    for spec in definition.inputs:
        label = spec.description or spec.name.replace('_', ' ')
        if spec.encrypted:
            figures[spec.name] = prompt_amounts(label, input_fn, print_fn)
        else:
            figures[spec.name] = [prompt_single(label, input_fn, print_fn)]
    return figures
