"""
Tests for credential loading and the model table
"""
import json
import pytest

from open_agent_proxy.common import config
from open_agent_proxy.common.credentials import AgentCredentials, CredentialsError, load_credentials


class TestCredentials:
    """Tests for the credential file"""

    def test_missing_file_gives_empty_credentials(self, tmp_path):
        credentials = load_credentials(str(tmp_path / "absent.json"))
        assert credentials == AgentCredentials()

    def test_reads_key_and_auth_method(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"api_key": "secret", "auth_method": "gemini-api-key"}))
        credentials = load_credentials(str(path))
        assert credentials.api_key == "secret"
        assert credentials.auth_method == "gemini-api-key"

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")
        with pytest.raises(CredentialsError):
            load_credentials(str(path))

    def test_non_object_raises(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps(["api_key"]))
        with pytest.raises(CredentialsError):
            load_credentials(str(path))

    def test_agent_env_exports_key(self, monkeypatch):
        monkeypatch.setenv("SOME_OTHER_VAR", "kept")
        env = AgentCredentials(api_key="secret").agent_env("GEMINI_API_KEY")
        assert env["GEMINI_API_KEY"] == "secret"
        assert env["SOME_OTHER_VAR"] == "kept"

    def test_agent_env_without_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        env = AgentCredentials().agent_env("GEMINI_API_KEY")
        assert "GEMINI_API_KEY" not in env


class TestModelTable:
    """Tests for model id resolution"""

    def test_known_model_resolves(self, monkeypatch):
        monkeypatch.setattr(config, "MODEL_MAP", {"fast": "gemini-2.5-flash"})
        assert config.resolve_model("fast") == "gemini-2.5-flash"

    def test_unknown_model_is_none(self, monkeypatch):
        monkeypatch.setattr(config, "MODEL_MAP", {"fast": "gemini-2.5-flash"})
        assert config.resolve_model("slow") is None

    def test_missing_model_uses_default(self, monkeypatch):
        monkeypatch.setattr(config, "MODEL_MAP", {"fast": "gemini-2.5-flash"})
        monkeypatch.setattr(config, "DEFAULT_MODEL", "fast")
        assert config.resolve_model(None) == "gemini-2.5-flash"

    def test_model_map_from_environment(self, monkeypatch):
        monkeypatch.setenv("MODEL_MAP", json.dumps({"pro": "gemini-2.5-pro"}))
        assert config._load_model_map() == {"pro": "gemini-2.5-pro"}

    def test_invalid_model_map_falls_back(self, monkeypatch):
        monkeypatch.setenv("MODEL_MAP", "{broken")
        assert config._load_model_map() == config.DEFAULT_MODEL_MAP

    def test_non_object_model_map_falls_back(self, monkeypatch):
        monkeypatch.setenv("MODEL_MAP", json.dumps(["pro"]))
        assert config._load_model_map() == config.DEFAULT_MODEL_MAP
