"""
Assistant registry: the read-only catalog of persona configurations.

Built once at startup. Entries are never added or removed afterwards, so
concurrent readers need no locking.
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Optional

from .errors import UnknownAssistant
from .models import AssistantConfig
from .persona_loader import load_personas


class AssistantRegistry:
    def __init__(self, configs: Iterable[AssistantConfig]):
        table = {}
        for config in configs:
            if config.id in table:
                raise ValueError(f"Duplicate assistant id: {config.id}")
            table[config.id] = config
        self._configs = MappingProxyType(table)

    @classmethod
    def from_directory(cls, personas_dir: Optional[Path] = None) -> "AssistantRegistry":
        return cls(load_personas(personas_dir))

    def __contains__(self, assistant_id: object) -> bool:
        return assistant_id in self._configs

    def __len__(self) -> int:
        return len(self._configs)

    def find_config(self, assistant_id: str) -> Optional[AssistantConfig]:
        return self._configs.get(assistant_id)

    def get_config(self, assistant_id: str) -> AssistantConfig:
        config = self._configs.get(assistant_id)
        if config is None:
            raise UnknownAssistant(assistant_id)
        return config

    def list_configs(self) -> List[AssistantConfig]:
        return list(self._configs.values())

    def get_capabilities(self, assistant_id: str) -> List[str]:
        """Capabilities for a persona; unknown ids yield an empty list rather than an error."""
        config = self._configs.get(assistant_id)
        return list(config.capabilities) if config else []
