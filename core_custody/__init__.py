"""
Core Custody Programs

Value-custody programs for an account-based ledger: an escrow for atomic
token swaps, a constant-product AMM and a flash-loan vault, all built on one
account-validation and program-derived-authority framework.
"""

__version__ = "1.0.0"
