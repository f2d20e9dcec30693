# tests/test_config.py
import pytest

from secmon.config import DEFAULT_RULE_DIR, MonitorConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SECMON_ENABLED", "SECMON_MAX_FAILED_LOGINS", "SECMON_WEBHOOK_URL",
                 "SECMON_MEDIUM_RISK_COUNTRIES", "SECMON_MAX_TRACKED_IPS"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = load_config()
    assert config.enabled is False
    assert config.max_failed_logins == 5
    assert config.ip_block_duration == 3600.0
    assert config.rule_dir == DEFAULT_RULE_DIR
    assert config.alert_thresholds == {"low": 20, "medium": 40, "high": 60, "critical": 80}


def test_yaml_then_environment(tmp_path, monkeypatch):
    path = tmp_path / "secmon.yaml"
    path.write_text(
        "enabled: true\n"
        "max_failed_logins: 3\n"
        "high_risk_countries: [XX]\n"
        "alert_thresholds:\n"
        "  critical: 90\n"
    )
    monkeypatch.setenv("SECMON_MAX_FAILED_LOGINS", "7")
    monkeypatch.setenv("SECMON_WEBHOOK_URL", "http://hook.test")
    monkeypatch.setenv("SECMON_MEDIUM_RISK_COUNTRIES", '["AA", "BB"]')

    config = load_config(str(path))

    assert isinstance(config, MonitorConfig)
    assert config.enabled is True
    assert config.max_failed_logins == 7
    assert config.webhook_url == "http://hook.test"
    assert config.high_risk_countries == ["XX"]
    assert config.medium_risk_countries == ["AA", "BB"]
    assert config.alert_thresholds["critical"] == 90
    assert config.alert_thresholds["low"] == 20


def test_constructor_arguments_win_over_environment(monkeypatch):
    monkeypatch.setenv("SECMON_ENABLED", "false")
    assert MonitorConfig(enabled=True).enabled is True
    assert MonitorConfig().enabled is False


def test_unknown_keys_are_ignored(tmp_path):
    path = tmp_path / "secmon.yaml"
    path.write_text("not_a_setting: 1\nrate_limit_requests: 50\n")
    config = load_config(str(path))
    assert config.rate_limit_requests == 50
    assert not hasattr(config, "not_a_setting")


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_bad_values_raise(monkeypatch):
    monkeypatch.setenv("SECMON_ENABLED", "maybe")
    with pytest.raises(ValueError):
        load_config()
    monkeypatch.delenv("SECMON_ENABLED")

    monkeypatch.setenv("SECMON_MAX_TRACKED_IPS", "lots")
    with pytest.raises(ValueError):
        load_config()
    monkeypatch.delenv("SECMON_MAX_TRACKED_IPS")

    with pytest.raises(ValueError):
        MonitorConfig(max_events_in_memory=0)
    with pytest.raises(ValueError):
        MonitorConfig(cleanup_interval=-1)


def test_severity_for_score():
    config = MonitorConfig()
    assert config.severity_for_score(10) is None
    assert config.severity_for_score(20) == "low"
    assert config.severity_for_score(65) == "high"
    assert config.severity_for_score(100) == "critical"


def test_rule_defaults_follow_config():
    config = MonitorConfig(ip_block_duration=60, max_failed_logins=2)
    assert config.rule_defaults()["block_duration"] == 60
    assert config.rule_defaults()["failed_login_threshold"] == 2
