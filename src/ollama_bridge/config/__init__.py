"""Configuration management for ollama-bridge.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides for sensitive values like
the managed tunnel authtoken, and persists that token between runs.
"""

from ollama_bridge.config.settings import Settings, load_settings
from ollama_bridge.config.store import CredentialStore

__all__ = ["CredentialStore", "Settings", "load_settings"]
