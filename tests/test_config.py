"""Tests for configuration loading."""

from shared.config import Settings, load_yaml_config


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings()

        assert settings.server.endpoint_path == "/api/mcp"
        assert settings.server.protocol_version == "2025-11-25"
        assert settings.server.server_name == "fullhouse-crm-mcp"

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "log_level: DEBUG\n"
            "server:\n"
            "  port: 9000\n"
            "  enable_audit: false\n"
        )

        settings = Settings.from_yaml(path)

        assert settings.log_level == "DEBUG"
        assert settings.server.port == 9000
        assert settings.server.enable_audit is False

    def test_missing_yaml(self, tmp_path):
        assert load_yaml_config(tmp_path / "missing.yaml") == {}

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CRM_MCP_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("CRM_MCP_SERVER_PORT", "8100")

        settings = Settings()

        assert settings.log_level == "WARNING"
        assert settings.server.port == 8100
