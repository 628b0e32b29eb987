import os
from pathlib import Path

import pytest
import yaml

from promorch.config import (
    PromorchConfig,
    get_promorch_home,
    load_config,
    validate_trigger_params,
)
from promorch.errors import ConfigError


def test_get_promorch_home_default(monkeypatch):
    monkeypatch.delenv("PROMORCH_HOME", raising=False)
    assert get_promorch_home() == Path("~/.config/promorch").expanduser()


def test_get_promorch_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("PROMORCH_HOME", str(custom_home))
    assert get_promorch_home() == custom_home


def test_load_config_missing_file(monkeypatch, tmp_path):
    monkeypatch.setenv("PROMORCH_HOME", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="promorch config.yaml not found"):
        load_config()


def test_load_config_valid(monkeypatch, tmp_path):
    monkeypatch.setenv("PROMORCH_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({
        "store_backend": "sqlite",
        "store_path": str(tmp_path / "store.db"),
        "chunk_size": 50,
        "claim_timeout_seconds": 900,
        "owner": "adobecom",
        "repo": "summit",
    }))

    cfg = load_config()
    assert isinstance(cfg, PromorchConfig)
    assert cfg.store_backend == "sqlite"
    assert cfg.chunk_size == 50
    assert cfg.claim_timeout_seconds == 900
    assert cfg.poll_interval_seconds == 30.0
    assert cfg.max_poll_attempts == 30


def test_load_config_with_env_file(monkeypatch, tmp_path):
    monkeypatch.setenv("PROMORCH_HOME", str(tmp_path))
    monkeypatch.delenv("TEST_ADMIN_KEY", raising=False)
    env_file = tmp_path / ".env.test"
    env_file.write_text("TEST_ADMIN_KEY=secret-token")
    (tmp_path / "config.yaml").write_text(yaml.dump({
        "admin_api_key_env": "TEST_ADMIN_KEY",
        "env_file": str(env_file),
    }))

    cfg = load_config()
    assert os.environ.get("TEST_ADMIN_KEY") == "secret-token"
    assert cfg.admin_api_key == "secret-token"
    monkeypatch.delenv("TEST_ADMIN_KEY", raising=False)


def test_load_config_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("chunk_size: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


def test_load_config_unknown_key(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"dataset_raw": "raw"}))
    with pytest.raises(ConfigError, match="Unknown configuration keys: dataset_raw"):
        load_config(path)


@pytest.mark.parametrize("overrides, message", [
    ({"store_backend": "redis"}, "store_backend"),
    ({"chunk_size": 0}, "chunk_size"),
    ({"max_poll_attempts": 0}, "max_poll_attempts"),
    ({"claim_timeout_seconds": 0}, "claim_timeout_seconds"),
    ({"item_retry_attempts": 0}, "item_retry_attempts"),
    ({"log_format": "xml"}, "log_format"),
])
def test_validate_rejects(overrides, message):
    with pytest.raises(ConfigError, match=message):
        PromorchConfig(**overrides).validate()


def test_validate_defaults():
    PromorchConfig().validate()


class TestTriggerParams:
    """Trigger parameter validation."""

    def test_valid(self, trigger_params):
        validate_trigger_params({**trigger_params, "sourcePaths": ["/gb/summit/a.docx"]})

    def test_drafts_only_without_paths(self, trigger_params):
        validate_trigger_params({**trigger_params, "draftsOnly": True})

    def test_lists_every_missing_param(self):
        with pytest.raises(ConfigError) as exc:
            validate_trigger_params({"rootFolder": "/site"})
        message = str(exc.value)
        for name in ("gbRootFolder", "experienceName", "projectExcelPath", "adminPageUri", "sourcePaths"):
            assert name in message
        assert "rootFolder," not in message

    def test_source_paths_must_be_list(self, trigger_params):
        with pytest.raises(ConfigError, match="must be a list"):
            validate_trigger_params({**trigger_params, "sourcePaths": "/a.docx"})
