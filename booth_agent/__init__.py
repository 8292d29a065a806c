"""Booth asset-finding chat agent."""

from .agent import AgentResult, BoothChatAgent

__all__ = ["AgentResult", "BoothChatAgent"]
