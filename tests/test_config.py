import pytest

from huginn_core.config import AgentConfig, load_config
from huginn_core.errors import ConfigError


def _write(tmp_path, text):
    p = tmp_path / "agent.yml"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_load_yaml_with_defaults(tmp_path):
    cfg = load_config(_write(tmp_path, "base_url: https://odin.example.com/api/\ncheckin_interval_s: 60\n"))
    assert cfg.base_url == "https://odin.example.com/api"
    assert cfg.checkin_interval_s == 60
    assert cfg.telemetry_interval_s == 1800
    assert cfg.max_output_bytes == 1024 * 1024
    assert cfg.endpoints.checkin == "/checkin"


def test_env_overrides_file(tmp_path, monkeypatch):
    path = _write(tmp_path, "base_url: https://a.example.com\nlog_level: info\n")
    monkeypatch.setenv("HUGINN_BASE_URL", "https://b.example.com")
    monkeypatch.setenv("HUGINN_LOG_LEVEL", "warn")
    monkeypatch.setenv("HUGINN_ENROLLMENT_TOKEN", "T1")
    cfg = load_config(path)
    assert cfg.base_url == "https://b.example.com"
    assert cfg.log_level == "WARNING"
    assert cfg.enrollment_token == "T1"


def test_default_path_under_config_dir(tmp_path, monkeypatch):
    cfg_dir = tmp_path / "etc"
    cfg_dir.mkdir()
    (cfg_dir / "agent.yml").write_text("base_url: http://localhost:8080\n", encoding="utf-8")
    monkeypatch.setenv("HUGINN_CONFIG_DIR", str(cfg_dir))
    assert load_config().base_url == "http://localhost:8080"


def test_missing_base_url_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="base_url"):
        load_config(_write(tmp_path, "log_level: INFO\n"))


@pytest.mark.parametrize("field,value", [
    ("checkin_interval_s", 5),
    ("checkin_interval_s", 301),
    ("telemetry_interval_s", 30),
    ("telemetry_interval_s", 7200),
    ("backoff_jitter", 0.9),
])
def test_out_of_range_values_rejected(tmp_path, field, value):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, f"base_url: https://x.test\n{field}: {value}\n"))


def test_ceiling_below_base_rejected():
    with pytest.raises(ValueError):
        AgentConfig(base_url="https://x.test", backoff_base_s=60, backoff_ceiling_s=10)


def test_unknown_key_rejected(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "base_url: https://x.test\nchekin_interval: 10\n"))


def test_non_mapping_document_rejected(tmp_path):
    with pytest.raises(ConfigError, match="mapping"):
        load_config(_write(tmp_path, "- just\n- a list\n"))


def test_bad_scheme_rejected(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "base_url: ftp://x.test\n"))
