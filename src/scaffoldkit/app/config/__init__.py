"""Configuration loading."""

from .loader import ScaffoldConfig, SelectionDefaults, load_config, parse_config, parse_config_file

__all__ = ["ScaffoldConfig", "SelectionDefaults", "load_config", "parse_config", "parse_config_file"]
