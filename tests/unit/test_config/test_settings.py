"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ollama_bridge.config.settings import (
    DEFAULT_ALLOWED_DOMAINS,
    ManagedConfig,
    RelayConfig,
    ServerConfig,
    Settings,
    load_settings,
)


class TestSettings:
    def test_default_settings(self) -> None:
        """Default Settings should be valid."""
        settings = Settings()
        assert settings.upstream.url == "http://localhost:11434"
        assert settings.upstream.probe_path == "/api/tags"
        assert settings.server.default_port == 3535
        assert settings.server.port is None
        assert settings.tunnel.provider == "relay"
        assert settings.tunnel.open_timeout == 15.0
        assert settings.display.qr is False

    def test_relay_config_defaults(self) -> None:
        """Relay defaults should target the public localtunnel host."""
        config = RelayConfig()
        assert config.host == "https://localtunnel.me"
        assert config.subdomain is None
        assert config.max_connections == 10

    def test_managed_config_defaults(self) -> None:
        """Managed defaults should carry the built-in domain allow-list."""
        config = ManagedConfig()
        assert config.authtoken.get_secret_value() == ""
        assert config.allowed_domains == DEFAULT_ALLOWED_DOMAINS
        assert "ngrok-skip-browser-warning" in config.strip_request_headers

    def test_authtoken_hidden_in_repr(self) -> None:
        """The tunnel credential should not appear in repr."""
        config = ManagedConfig(authtoken="2abcSECRET")
        assert "2abcSECRET" not in repr(config)

    def test_invalid_port_rejected(self) -> None:
        """Ports outside 1-65535 should be rejected."""
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)

    def test_invalid_provider_rejected(self) -> None:
        """Only relay and managed providers are accepted."""
        with pytest.raises(ValidationError):
            Settings(tunnel={"provider": "carrier-pigeon"})

    def test_nested_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Double-underscore env vars should reach nested sections."""
        monkeypatch.setenv("OLLAMA_BRIDGE_SERVER__DEFAULT_PORT", "4000")
        assert Settings().server.default_port == 4000


class TestLoadSettings:
    def test_load_settings_missing_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """load_settings with missing file should return defaults."""
        monkeypatch.chdir(tmp_path)
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.upstream.url == "http://localhost:11434"

    def test_load_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Values from the YAML file should be applied."""
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "bridge.yaml"
        path.write_text(
            "upstream:\n"
            "  url: http://10.0.0.5:11434\n"
            "tunnel:\n"
            "  provider: managed\n"
            "managed:\n"
            "  allowed_domains:\n"
            "    - '*.example.dev'\n"
        )
        settings = load_settings(path)
        assert settings.upstream.url == "http://10.0.0.5:11434"
        assert settings.tunnel.provider == "managed"
        assert settings.managed.allowed_domains == ["*.example.dev"]

    def test_ngrok_authtoken_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """NGROK_AUTHTOKEN should fill the managed credential."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("NGROK_AUTHTOKEN", "env-token")
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.managed.authtoken.get_secret_value() == "env-token"

    def test_ngrok_authtoken_env_wins_over_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """NGROK_AUTHTOKEN should replace a token set in the YAML file."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("NGROK_AUTHTOKEN", "env-token")
        path = tmp_path / "bridge.yaml"
        path.write_text("managed:\n  authtoken: yaml-token\n")
        settings = load_settings(path)
        assert settings.managed.authtoken.get_secret_value() == "env-token"

    def test_prefixed_env_wins_over_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Prefixed env vars should override YAML values and keep YAML siblings."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("OLLAMA_BRIDGE_UPSTREAM__URL", "http://env-host:11434")
        path = tmp_path / "bridge.yaml"
        path.write_text(
            "upstream:\n"
            "  url: http://yaml-host:11434\n"
            "  probe_timeout: 3\n"
        )
        settings = load_settings(path)
        assert settings.upstream.url == "http://env-host:11434"
        assert settings.upstream.probe_timeout == 3.0

    def test_yaml_used_without_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """YAML values should still apply where no env var is set."""
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "bridge.yaml"
        path.write_text("server:\n  default_port: 4200\n")
        monkeypatch.setenv("OLLAMA_BRIDGE_SERVER__HOST", "0.0.0.0")
        settings = load_settings(path)
        assert settings.server.default_port == 4200
        assert settings.server.host == "0.0.0.0"

    def test_dotenv_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A .env file in the working directory should be honored."""
        monkeypatch.chdir(tmp_path)
        # Restored after the test; the loader writes into os.environ
        monkeypatch.setenv("NGROK_AUTHTOKEN", "")
        (tmp_path / ".env").write_text("# comment\nNGROK_AUTHTOKEN=dotenv-token\n")
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.managed.authtoken.get_secret_value() == "dotenv-token"
