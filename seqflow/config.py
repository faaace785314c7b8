# File: seqflow/config.py
# Location: seqflow/seqflow/config.py

"""
Configuration management module.

This module handles loading configuration from JSON files. All default values
reside in config.json, which is included in the installed package directory.
A user configuration file is merged on top of the defaults: scalar values
replace the defaults, nested blocks (``labels``, ``containers``, ``ext_args``,
``ext_prefix``) are merged key by key.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger("seqflow")

DEFAULT_CONFIG = os.path.join(os.path.dirname(__file__), "config.json")


def _read_json(config_file: str) -> Dict[str, Any]:
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file '{config_file}' not found.")

    with open(config_file, "r", encoding="utf-8") as f:
        try:
            config = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error parsing JSON configuration: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file '{config_file}' must contain a JSON object")
    return config


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``.

    Nested dictionaries are merged recursively; every other value in
    ``override`` replaces the value in ``base``.
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the run configuration.

    The package-installed 'config.json' provides the defaults; if
    ``config_file`` is given, its values are merged on top.

    Parameters
    ----------
    config_file : str, optional
        Path to a user configuration file in JSON format.

    Returns
    -------
    dict
        Merged configuration dictionary.

    Raises
    ------
    FileNotFoundError
        If the specified configuration file does not exist.
    ValueError
        If there is an error parsing a JSON configuration file.
    """
    config = _read_json(DEFAULT_CONFIG)
    if config_file:
        user_config = _read_json(config_file)
        logger.debug(f"Merging user configuration from {config_file}")
        config = merge_config(config, user_config)
    return config
