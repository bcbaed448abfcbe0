"""
Tests for the config file service and settings resolution.
"""

import json

import pytest

from agentrelay.config.settings import Settings, load_settings
from agentrelay.services.config_service import ConfigService


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.json"


def write_config(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


def test_missing_file_is_empty(config_path):
    service = ConfigService(config_path)
    assert service.get_all() == {}
    assert service.load() == {}
    assert service.get("ollama.host", "fallback") == "fallback"


def test_dot_path_get_and_set(config_path):
    service = ConfigService(config_path)
    service.set("providers.claude.binary", "/opt/claude")
    assert service.get("providers.claude.binary") == "/opt/claude"
    assert service.get("providers.codex.binary") is None
    assert service.get("providers.claude.binary.deeper", "x") == "x"


def test_save_and_reload(config_path):
    service = ConfigService(config_path)
    service.set("ollama.host", "http://gpu-box:11434")
    assert service.save()
    assert ConfigService(config_path).get("ollama.host") == "http://gpu-box:11434"


def test_update_merges_nested(config_path):
    write_config(config_path, {"providers": {"claude": {"binary": "claude"}}})
    service = ConfigService(config_path)
    service.update({"providers": {"codex": {"binary": "codex-nightly"}}})
    assert service.get("providers.claude.binary") == "claude"
    assert service.get("providers.codex.binary") == "codex-nightly"


def test_invalid_json_raises_on_load(config_path):
    config_path.write_text("{not json", encoding="utf-8")
    service = ConfigService(config_path)
    assert service.get_all() == {}
    with pytest.raises(ValueError):
        service.load()


def test_non_object_json_raises(config_path):
    write_config(config_path, [1, 2, 3])
    with pytest.raises(ValueError):
        ConfigService(config_path).load()


def test_settings_defaults(config_path):
    settings = load_settings(config_path, environ={})
    assert settings == Settings()
    assert settings.process_timeout == 300
    assert settings.tool_result_max_length == 500


def test_settings_from_config_file(config_path):
    write_config(config_path, {
        "process_timeout_ms": 60000,
        "tool_result_max_length": 2000,
        "ollama": {"host": "http://other:11434"},
        "providers": {"claude": {"binary": "/usr/local/bin/claude"}},
        "default_provider": "ollama",
    })
    settings = load_settings(config_path, environ={})
    assert settings.process_timeout == 60
    assert settings.tool_result_max_length == 2000
    assert settings.ollama_host == "http://other:11434"
    assert settings.claude_binary == "/usr/local/bin/claude"
    assert settings.codex_binary == "codex"
    assert settings.default_provider == "ollama"


def test_environment_overrides_config(config_path, tmp_path):
    write_config(config_path, {"process_timeout_ms": 60000, "ollama": {"host": "http://file:11434"}})
    settings = load_settings(config_path, environ={
        "PROCESS_TIMEOUT_MS": "1000",
        "TOOL_RESULT_MAX_LENGTH": "80",
        "OLLAMA_HOST": "http://env:11434",
        "AGENTRELAY_UPLOAD_DIR": str(tmp_path / "up"),
        "AGENTRELAY_DEBUG": "yes",
    })
    assert settings.process_timeout_ms == 1000
    assert settings.tool_result_max_length == 80
    assert settings.ollama_host == "http://env:11434"
    assert settings.upload_dir == str(tmp_path / "up")
    assert settings.debug is True


def test_bad_numbers_keep_previous_value(config_path):
    write_config(config_path, {"process_timeout_ms": "soon"})
    settings = load_settings(config_path, environ={"TOOL_RESULT_MAX_LENGTH": "-5"})
    assert settings.process_timeout_ms == Settings().process_timeout_ms
    assert settings.tool_result_max_length == 500
