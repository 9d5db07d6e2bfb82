from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator
from pydantic import ValidationError

from .config import get_settings
from .models import AssistantConfig

logger = logging.getLogger("persona-gateway")

# Persona YAML files live in the persona_gateway.personas package (personas/*.yaml).
PERSONAS_DIR = Path(__file__).parent / "personas"

PERSONA_FILE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "name", "behavior_prompt", "model", "temperature", "max_tokens"],
    "properties": {
        "id": {"type": "string", "pattern": "^[a-z][a-z0-9_]*$"},
        "name": {"type": "string", "minLength": 1},
        "name_ar": {"type": "string"},
        "behavior_prompt": {"type": "string", "minLength": 1},
        "model": {"type": "string", "minLength": 1},
        "temperature": {"type": "integer", "minimum": 0, "maximum": 100},
        "max_tokens": {"type": "integer", "minimum": 1},
        "capabilities": {"type": "array", "items": {"type": "string"}},
        "suggestions": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
    },
}


class PersonaLoadError(RuntimeError):
    """Raised when a persona file cannot be loaded or validated."""


def _read_persona_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise PersonaLoadError(f"Persona YAML must deserialize to a mapping: {path}")

    return data


def _validate_persona_file(raw: Dict[str, Any], path: Path) -> None:
    errors = sorted(Draft7Validator(PERSONA_FILE_SCHEMA).iter_errors(raw), key=lambda e: [str(p) for p in e.path])
    if errors:
        summary = "; ".join(
            f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors
        )
        raise PersonaLoadError(f"Invalid persona file {path.name}: {summary}")


def load_persona(path: Path) -> AssistantConfig:
    """Load and validate a single persona file."""
    if not path.exists():
        raise PersonaLoadError(f"Persona file not found: {path}")

    raw = _read_persona_yaml(path)
    _validate_persona_file(raw, path)

    if raw["id"] != path.stem:
        raise PersonaLoadError(f"Persona id '{raw['id']}' does not match file name '{path.name}'")

    try:
        return AssistantConfig(**raw)
    except ValidationError as exc:
        raise PersonaLoadError(f"Invalid persona file {path.name}: {exc}") from exc


def resolve_personas_dir(personas_dir: Optional[Path] = None) -> Path:
    if personas_dir is not None:
        return Path(personas_dir)
    override = get_settings().personas_dir
    return Path(override) if override else PERSONAS_DIR


def load_personas(personas_dir: Optional[Path] = None) -> List[AssistantConfig]:
    """Load every personas/*.yaml file, sorted by file name."""
    directory = resolve_personas_dir(personas_dir)
    if not directory.is_dir():
        raise PersonaLoadError(f"Personas directory not found: {directory}")

    configs = [load_persona(p) for p in sorted(directory.glob("*.yaml")) if p.is_file()]
    if not configs:
        raise PersonaLoadError(f"No persona files found in {directory}")

    logger.info("loaded personas count=%d dir=%s", len(configs), directory)
    return configs
