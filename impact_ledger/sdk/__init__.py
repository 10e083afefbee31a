"""
SDK for the impact ledger.

Provides the chat service that records usage and the client wrapper that
reconciles provisional impact figures.
"""

from .impact_client import ImpactClient
from .openai_client import ImpactChatService, QueryResult

__all__ = ["ImpactChatService", "ImpactClient", "QueryResult"]
