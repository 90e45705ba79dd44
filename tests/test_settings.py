"""
Tests for the configuration loader.
"""
import textwrap

from config.settings import DEFAULT_PROMPT, Settings, load_settings


class TestLoadSettings:

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert isinstance(settings, Settings)
        assert settings.model.backend == "realtime"
        assert settings.session.prompt == DEFAULT_PROMPT
        assert settings.session.allowed_voices == []
        assert settings.model.api_key == ""

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOICE_TEST_KEY", "sk-from-env")
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            app_name: FrontDesk
            model:
              backend: memory
              api_key: ${VOICE_TEST_KEY}
              unknown_key: ignored
            session:
              default_voice: verse
              tool_timeout_s: 1.5
              inbound_buffer_capacity: 32
            server:
              port: 9001
        """))
        settings = load_settings(str(path))
        assert settings.app_name == "FrontDesk"
        assert settings.model.backend == "memory"
        assert settings.model.api_key == "sk-from-env"
        assert settings.session.default_voice == "verse"
        assert settings.session.tool_timeout_s == 1.5
        assert settings.session.inbound_buffer_capacity == 32
        assert settings.server.port == 9001

    def test_unresolved_key_falls_back_to_openai_env(self, tmp_path, monkeypatch):
        monkeypatch.delenv("VOICE_MISSING_KEY", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")
        path = tmp_path / "settings.yaml"
        path.write_text("model:\n  api_key: ${VOICE_MISSING_KEY}\n")
        assert load_settings(str(path)).model.api_key == "sk-fallback"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("VOICE_CONFIG", str(path))
        assert load_settings().app_name == "FromEnv"

    def test_shipped_settings_file_loads(self, monkeypatch):
        monkeypatch.delenv("VOICE_CONFIG", raising=False)
        settings = load_settings()
        assert settings.session.default_voice in settings.session.allowed_voices
        assert settings.session.outbound_buffer_capacity == 512
