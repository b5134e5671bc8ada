"""
Owner Module - Data Owner Side
==============================
Key generation, encryption of figures and decryption of results.
"""

from .owner_client import (
    OwnerClient, BudgetReport, OutputReport,
    prepare_inputs, expected_outputs, run_owner_session,
)
from .prompts import prompt_amounts, prompt_single, prompt_figures, SENTINEL

__all__ = [
    'OwnerClient', 'BudgetReport', 'OutputReport',
    'prepare_inputs', 'expected_outputs', 'run_owner_session',
    'prompt_amounts', 'prompt_single', 'prompt_figures', 'SENTINEL',
]
