import pytest

from core.exceptions import ConfigurationError
from harvester.config import Settings, load_settings


def test_defaults_without_environment():
    settings = load_settings(env={})
    assert settings == Settings()
    assert settings.monthly_quota == 50000
    assert settings.max_retries == 3
    assert settings.backoff_max == 60.0
    assert settings.respect_quota is True
    assert settings.smtp_host is None


def test_environment_values_are_coerced():
    settings = load_settings(env={
        "MONTHLY_QUOTA": "1000",
        "BACKOFF_BASE": "0.5",
        "RESPECT_QUOTA": "false",
        "SMTP_HOST": "smtp.example.test",
        "PROFILE_API_KEY": "abc",
    })
    assert settings.monthly_quota == 1000
    assert settings.backoff_base == 0.5
    assert settings.respect_quota is False
    assert settings.smtp_host == "smtp.example.test"
    assert settings.api_key == "abc"


def test_yaml_overrides_environment(tmp_path):
    config_file = tmp_path / "harvester.yaml"
    config_file.write_text("batch_size: 25\nitem_delay: 0\nadmin_email: ops@example.test\n")

    settings = load_settings(env={"BATCH_SIZE": "5", "HARVESTER_CONFIG": str(config_file)})

    assert settings.batch_size == 25
    assert settings.item_delay == 0.0
    assert settings.admin_email == "ops@example.test"


def test_unknown_yaml_key_rejected(tmp_path):
    config_file = tmp_path / "harvester.yaml"
    config_file.write_text("batchsize: 25\n")
    with pytest.raises(ConfigurationError, match="Unknown configuration keys"):
        load_settings(env={}, config_path=str(config_file))


def test_missing_config_file_rejected(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(env={}, config_path=str(tmp_path / "missing.yaml"))


def test_invalid_yaml_rejected(tmp_path):
    config_file = tmp_path / "harvester.yaml"
    config_file.write_text("batch_size: [1, 2\n")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_settings(env={}, config_path=str(config_file))


@pytest.mark.parametrize("env", [
    {"MONTHLY_QUOTA": "0"},
    {"BATCH_SIZE": "-1"},
    {"MAX_RETRIES": "0"},
    {"BACKOFF_BASE": "120", "BACKOFF_MAX": "60"},
    {"MONTHLY_QUOTA": "lots"},
])
def test_invalid_values_rejected(env):
    with pytest.raises(ConfigurationError):
        load_settings(env=env)
