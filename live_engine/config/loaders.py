"""
YAML loading for the engine configuration.

References to the environment are expanded in the raw text before parsing:
``${NAME}``, ``${NAME:-fallback}`` and ``${NAME:=fallback}`` (both fallback
forms apply when NAME is unset or empty), plus bare ``$NAME``. A reference
without a fallback to an unset variable is kept verbatim so the validation
error points at it.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from structlog import get_logger

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = "config/live_engine.yaml"

_REFERENCE = re.compile(r"\$\{(?P<name>[^}:]+)(?:(?P<op>:[-=])(?P<fallback>[^}]*))?\}")


def expand_env_references(text: str) -> str:
    def substitute(match: "re.Match[str]") -> str:
        value = os.environ.get(match.group("name"))
        if match.group("op"):
            return value if value else match.group("fallback")
        return match.group(0) if value is None else value

    return os.path.expandvars(_REFERENCE.sub(substitute, text))


def resolve_config_path(path: Union[str, Path]) -> str:
    """Relative paths are taken from the project root, not the working directory."""
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return str(candidate)


def load_yaml_with_env_expansion(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read ``path``, expand environment references and parse it as YAML.

    An empty document yields ``{}``. Raises FileNotFoundError for a missing
    file, yaml.YAMLError for bad syntax and ValueError when the document
    root is not a mapping.
    """
    config_file = Path(path)
    if not config_file.is_file():
        raise FileNotFoundError(f"Configuration file not found at: {config_file}")

    text = expand_env_references(config_file.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.error("Invalid YAML in configuration file", path=str(config_file), error=str(exc))
        raise

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_file}")
    return data


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "PROJECT_ROOT",
    "expand_env_references",
    "resolve_config_path",
    "load_yaml_with_env_expansion",
]
