"""Persistent credential storage for the managed tunnel provider.

Keeps the provider authtoken between runs in a small YAML file under the
user's config directory, namespaced so the file can be shared with other
settings later.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from ollama_bridge.config.settings import DEFAULT_CREDENTIALS_PATH

logger = logging.getLogger(__name__)

NAMESPACE = "ollama-bridge"
AUTHTOKEN_KEY = "ngrok_authtoken"


class CredentialStore:
    """Reads and writes the managed-tunnel authtoken.

    File layout::

        ollama-bridge:
          ngrok_authtoken: 2abc...
    """

    def __init__(self, path: Path | str = DEFAULT_CREDENTIALS_PATH) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> str | None:
        """Return the stored authtoken, or None if nothing is stored."""
        token = self._read().get(AUTHTOKEN_KEY)
        return str(token) if token else None

    def set(self, token: str) -> None:
        """Persist ``token``, replacing any previous value."""
        token = token.strip()
        if not token:
            raise ValueError("Refusing to store an empty authtoken")
        section = self._read()
        section[AUTHTOKEN_KEY] = token
        self._write(section)
        logger.info("Stored tunnel credential in %s", self._path)

    def clear(self) -> bool:
        """Remove the stored authtoken. Returns True if one was present."""
        section = self._read()
        if AUTHTOKEN_KEY not in section:
            return False
        del section[AUTHTOKEN_KEY]
        self._write(section)
        logger.info("Removed tunnel credential from %s", self._path)
        return True

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            data = yaml.safe_load(f) or {}
        section = data.get(NAMESPACE) or {}
        if not isinstance(section, dict):
            logger.warning("Ignoring malformed credential file %s", self._path)
            return {}
        return dict(section)

    def _write(self, section: dict) -> None:
        data = {}
        if self._path.exists():
            with open(self._path) as f:
                data = yaml.safe_load(f) or {}
        data[NAMESPACE] = section

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # O_CREAT mode does not apply to an existing file
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
