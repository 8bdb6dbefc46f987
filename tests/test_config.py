import os

import pytest

from gem_projects.config import Settings, load_config
from gem_projects.errors import ConfigError


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_merges_selectors_and_user_settings(tmp_path):
    config_path = write(tmp_path / "config.yaml", "system:\n  queue_cooldown: 2\n  cdp_url: http://127.0.0.1:9333\n")

    settings = Settings.from_config(load_config(config_path))

    assert settings.queue_cooldown == 2.0
    assert isinstance(settings.queue_cooldown, float)
    assert settings.cdp_url == "http://127.0.0.1:9333"
    assert settings.queue_safety_timeout == 30.0
    assert "editor" in settings.selectors
    assert "Regenerate" in settings.boilerplate
    assert settings.app_url == "https://gemini.google.com/app"


def test_missing_user_config_is_reported(tmp_path):
    with pytest.raises(ConfigError, match="config_template.yaml"):
        load_config(str(tmp_path / "nope.yaml"))


def test_broken_yaml_is_reported(tmp_path):
    config_path = write(tmp_path / "config.yaml", "system: [unclosed\n")
    with pytest.raises(ConfigError, match="Failed to load"):
        load_config(config_path)


def test_unknown_setting_is_rejected():
    with pytest.raises(ConfigError, match="queue_cooldwn"):
        Settings.from_config({"system": {"queue_cooldwn": 1}})


def test_bad_value_is_rejected():
    with pytest.raises(ConfigError, match="session_probe_attempts"):
        Settings.from_config({"system": {"session_probe_attempts": "many"}})


def test_defaults_carry_shipped_selectors():
    settings = Settings.defaults()
    assert settings.selectors["role_attribute"] == "data-message-author-role"
    assert settings.title_min_prefix == 5 and settings.title_max_prefix == 20


def test_shipped_template_is_a_valid_config():
    template = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config_template.yaml")
    settings = Settings.from_config(load_config(template))

    assert settings.archive_enabled is True
    assert settings.archive_interval == 10.0
    assert settings.archive_min_length == 100


def test_archiving_can_be_switched_off():
    assert Settings.from_config({"system": {"archive_enabled": False}}).archive_enabled is False
