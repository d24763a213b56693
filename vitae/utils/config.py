"""
Configuration loading for VITAE.

Configuration is layered, later layers overriding earlier ones:

1. Packaged defaults (vitae/defaults.yaml)
2. Optional user YAML file (explicit path or VITAE_CONFIG env variable)
3. Environment variables (see ENV_OVERRIDES)
4. Dotlist overrides (e.g., ["queue.minutes_per_job=3"])

Credentials are never stored in config; providers read them from the environment.

Examples:
    >>> config = load_config()
    >>> config.llm.max_retries
    3

    >>> config = load_config(overrides=["llm.provider=ollama", "storage.backend=sqlite"])
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

DEFAULTS_PATH = Path(__file__).resolve().parent.parent / "defaults.yaml"

# Environment variable -> config key
ENV_OVERRIDES = {
    "LLM_PROVIDER": "llm.provider",
    "LLM_MODEL": "llm.model",
    "LLM_TIMEOUT_SECONDS": "llm.timeout_seconds",
    "LLM_MAX_RETRIES": "llm.max_retries",
    "OLLAMA_BASE_URL": "llm.ollama_base_url",
    "VITAE_STORAGE_BACKEND": "storage.backend",
    "VITAE_DB_PATH": "storage.db_path",
    "VITAE_LOG_DIR": "logging.log_dir",
    "VITAE_EVENTS_FILE": "logging.events_file",
}

# Keys whose env values must be converted from strings
_INT_KEYS = {"llm.timeout_seconds", "llm.max_retries"}


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[List[str]] = None,
) -> DictConfig:
    """
    Load layered configuration.

    Args:
        config_path: Optional user YAML file (defaults to VITAE_CONFIG env variable)
        overrides: Optional dotlist overrides applied last

    Returns:
        Merged DictConfig

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
    """
    config = OmegaConf.load(DEFAULTS_PATH)

    if config_path is None and os.getenv("VITAE_CONFIG"):
        config_path = Path(os.getenv("VITAE_CONFIG"))

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        config = OmegaConf.merge(config, OmegaConf.load(config_path))

    for env_var, key in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            OmegaConf.update(config, key, int(value) if key in _INT_KEYS else value)

    # OLLAMA_MODEL only applies when ollama is the selected provider
    if config.llm.provider == "ollama" and os.getenv("OLLAMA_MODEL") and not os.getenv("LLM_MODEL"):
        OmegaConf.update(config, "llm.model", os.getenv("OLLAMA_MODEL"))

    if overrides:
        config = OmegaConf.merge(config, OmegaConf.from_dotlist(list(overrides)))

    return config


def get_section(config: Optional[DictConfig], section: str) -> DictConfig:
    """
    Return one config section, loading defaults when no config is given.

    Lets components accept an optional config without each re-implementing
    the default lookup.
    """
    if config is None:
        config = load_config()
    return config[section]
