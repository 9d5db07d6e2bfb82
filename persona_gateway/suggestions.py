from __future__ import annotations

from typing import List

from .registry import AssistantRegistry

MAX_SUGGESTIONS = 3


def generate_suggestions(registry: AssistantRegistry, assistant_id: str) -> List[str]:
    """Canned follow-up prompts for a persona, at most three; unknown personas get none."""
    config = registry.find_config(assistant_id)
    if config is None:
        return []
    return list(config.suggestions[:MAX_SUGGESTIONS])
