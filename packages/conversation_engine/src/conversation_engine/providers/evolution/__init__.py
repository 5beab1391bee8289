"""Evolution API channel provider."""

from conversation_engine.providers.evolution.api import EvolutionAPI
from conversation_engine.providers.evolution.client import EvolutionChannelClient
from conversation_engine.providers.evolution.webhook import parse_evolution_event

__all__ = [
    "EvolutionAPI",
    "EvolutionChannelClient",
    "parse_evolution_event",
]
