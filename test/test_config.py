"""
Tests for settings loading
"""

from penny.config import AGENT_CONFIG, DEFAULT_MODEL, load_settings


def test_defaults(tmp_path, monkeypatch):
    for name in ("PENNY_LLM_MODEL", "PENNY_LLM_TIMEOUT", "PENNY_DB_PATH", "OPIK_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings(str(tmp_path / "missing.env"))
    assert settings.model == DEFAULT_MODEL
    assert settings.llm_timeout == 30.0
    assert settings.db_path is None
    assert settings.opik_api_key is None


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("PENNY_LLM_MODEL", "test-model")
    monkeypatch.setenv("PENNY_LLM_TIMEOUT", "5")
    monkeypatch.setenv("PENNY_DB_PATH", str(tmp_path / "x.db"))
    settings = load_settings(str(tmp_path / "missing.env"))
    assert settings.model == "test-model"
    assert settings.llm_timeout == 5.0
    assert settings.db_path.endswith("x.db")


def test_env_file(tmp_path, monkeypatch):
    monkeypatch.delenv("PENNY_LOG_DIR", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PENNY_LOG_DIR=/tmp/penny-logs\n")
    assert load_settings(str(env_file)).log_dir == "/tmp/penny-logs"
    monkeypatch.delenv("PENNY_LOG_DIR", raising=False)


def test_gate_thresholds():
    assert AGENT_CONFIG["max_weekly_interventions"] == 5
    assert AGENT_CONFIG["min_intervention_gap_hours"] == 12
    assert AGENT_CONFIG["allocation_drift_threshold"] == 10
