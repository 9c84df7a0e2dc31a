"""
SDK for the credit ledger.

Provides metered provider clients that charge credits per call.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
