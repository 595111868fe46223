"""Configuration module for m-agent."""

from m_agent.config.loader import get_config_path, load_config, save_config
from m_agent.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
