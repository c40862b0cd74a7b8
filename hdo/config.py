"""Centralized config loading: defaults overlaid with config.yaml, read once at import."""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Provider API keys (ANTHROPIC_API_KEY, GOOGLE_API_KEY) come from the project-root .env
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

CONFIG_PATH = Path(os.environ.get("HDO_CONFIG", Path(__file__).resolve().parent / "config.yaml"))

DEFAULTS = {
    "generator_model": "claude-sonnet-4-5",
    "reviewer_model": "claude-sonnet-4-5",
    "llm_max_retries": 3,
    "image_endpoint": None,
    "image_timeout_s": 60,
    "max_iterations": 100,
    "accept_threshold": 85,
    "max_loop_attempts": 3,
    "checkpoint_db": "./state/checkpoints.db",
    "checkpoint_keep": 200,
    "blueprint_styles": None,
    "output_path": "./output",
}


def load_config(path: str | Path | None = None) -> dict:
    """Read a YAML config file and overlay it on the defaults.

    Unknown keys are kept so callers can carry their own settings.
    """
    path = Path(path) if path is not None else CONFIG_PATH
    loaded = yaml.safe_load(path.read_text()) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return {**DEFAULTS, **loaded}


_config = load_config()


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config
