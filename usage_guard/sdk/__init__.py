"""
SDK for Usage Guard.

Provides metered wrappers around upstream model clients.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
