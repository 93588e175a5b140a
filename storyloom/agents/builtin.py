from __future__ import annotations

from storyloom.agents import chapters, librarian
from storyloom.agents.registry import AgentRegistry, agent_registry


def register_builtin_agents(registry: AgentRegistry = agent_registry) -> AgentRegistry:
    registry.register(librarian.AGENT_NAME, librarian.analyze)
    registry.register(chapters.AGENT_NAME, chapters.summarize)
    return registry
