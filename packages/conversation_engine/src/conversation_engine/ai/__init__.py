"""
AI assistant: context assembly, inference and output parsing.
"""

from conversation_engine.ai.context import ContextBuilder, Prompt
from conversation_engine.ai.gateway import InferenceGateway
from conversation_engine.ai.schema import (
    AssistantReply,
    InferenceOutcome,
    Intent,
    OrderPayload,
    Parsed,
    Unavailable,
    Unparsed,
    parse_assistant_output,
)

__all__ = [
    "ContextBuilder",
    "Prompt",
    "InferenceGateway",
    "AssistantReply",
    "InferenceOutcome",
    "Intent",
    "OrderPayload",
    "Parsed",
    "Unparsed",
    "Unavailable",
    "parse_assistant_output",
]
