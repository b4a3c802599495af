"""Config loader. Loads config.yaml over built-in defaults, provides options()."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel

from narrator.common import NARRATOR_HOME

CONFIG_FILE = Path(os.environ.get("NARRATOR_CONFIG", str(NARRATOR_HOME / "config.yaml")))

DEFAULTS: dict = {
    "voice_id": "21m00Tcm4TlvDq8ikWAM",
    "rate_limit_delay": 1.0,      # seconds between successive speech API calls
    "max_retries": 3,
    "summary_length": "short",    # short | medium | long
    "exclude_tool_output": True,
    "max_summary_length": 500,
    "poll_interval": 5.0,
}

_config: dict = {}
_loaded = False


class NarratorOptions(BaseModel, frozen=True):
    """The recognized options, validated. Unknown keys in config.yaml are ignored."""

    voice_id: str = DEFAULTS["voice_id"]
    rate_limit_delay: float = DEFAULTS["rate_limit_delay"]
    max_retries: int = DEFAULTS["max_retries"]
    summary_length: str = DEFAULTS["summary_length"]
    exclude_tool_output: bool = DEFAULTS["exclude_tool_output"]
    max_summary_length: int = DEFAULTS["max_summary_length"]
    poll_interval: float = DEFAULTS["poll_interval"]


def load() -> dict:
    """Load config.yaml merged over DEFAULTS. Safe to call multiple times (cached).

    A missing file is not an error: the defaults apply.
    """
    global _config, _loaded
    if _loaded:
        return _config

    merged = dict(DEFAULTS)
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {CONFIG_FILE} must contain a mapping, got {type(data).__name__}")
        merged.update(data)

    _config = merged
    _loaded = True
    return _config


def options() -> NarratorOptions:
    """Recognized options as a validated, immutable object."""
    data = load()
    return NarratorOptions(**{k: v for k, v in data.items() if k in NarratorOptions.model_fields})


def reload() -> dict:
    """Force reload from disk (useful for tests)."""
    global _loaded
    _loaded = False
    return load()
