from flask import Flask

import pytest

from config import Config, TestingConfig, get_config, init_config, validate_config


def settings(**overrides):
    values = {key: getattr(Config, key) for key in dir(Config) if key.isupper()}
    values.update(overrides)
    return values


def test_default_configuration_is_valid():
    assert validate_config(settings()) == []


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"ATTENDANCE_LATE_THRESHOLD_MINUTES": -1}, "LATE_THRESHOLD"),
        ({"ATTENDANCE_PARTIAL_THRESHOLD_MINUTES": 5}, "PARTIAL_THRESHOLD"),
        ({"QR_CODE_ERROR_CORRECT": "X"}, "QR_CODE_ERROR_CORRECT"),
        ({"QR_CODE_EXPIRY_MINUTES": 0}, "QR_CODE_EXPIRY_MINUTES"),
        ({"SESSION_SWEEP_INTERVAL_SECONDS": 0}, "SESSION_SWEEP_INTERVAL_SECONDS"),
        ({"BASE_URL": "attendance.example.com"}, "BASE_URL"),
    ],
)
def test_invalid_settings_are_reported(overrides, fragment):
    errors = validate_config(settings(**overrides))

    assert len(errors) == 1
    assert fragment in errors[0]


def test_init_config_applies_overrides(tmp_path):
    app = Flask(__name__)
    db_path = tmp_path / "nested" / "attendance.db"

    config_class = init_config(app, "testing", {"DATABASE_PATH": db_path, "QR_CODE_EXPIRY_MINUTES": 30})

    assert config_class is TestingConfig
    assert app.config["TESTING"] is True
    assert app.config["SESSION_SWEEP_ENABLED"] is False
    assert app.config["QR_CODE_EXPIRY_MINUTES"] == 30
    assert db_path.parent.is_dir()


def test_get_config_follows_flask_env(monkeypatch):
    monkeypatch.setenv("FLASK_ENV", "testing")
    assert get_config() is TestingConfig


def test_init_config_without_name_uses_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("FLASK_ENV", "testing")
    app = Flask(__name__)

    assert init_config(app, overrides={"DATABASE_PATH": tmp_path / "env.db"}) is TestingConfig
    assert app.config["TESTING"] is True
