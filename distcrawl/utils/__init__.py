"""
Configuration, logging and metrics helpers for the crawl engine.
"""

from .config import Config, ConfigManager, load_config, get_config, parse_config

__all__ = ['Config', 'ConfigManager', 'load_config', 'get_config', 'parse_config']
