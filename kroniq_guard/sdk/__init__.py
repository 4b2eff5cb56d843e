"""
SDK for kroniq-guard.

Provides metered access to chat completions and generation jobs.
"""

from .openai_client import ChatResult, MeteredChat, bill_generation

__all__ = ["ChatResult", "MeteredChat", "bill_generation"]
