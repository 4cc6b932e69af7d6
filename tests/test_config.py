from pathlib import Path

from budget_facts.config import load_config


ENV_KEYS = [
    "BUDGET_FACTS_DB_PATH",
    "BUDGET_FACTS_OUTPUT_DIR",
    "AGREEMENT_TOLERANCE",
    "SCALE_RATIO",
    "SMALL_AMOUNT_GUARD",
    "LLM_PROVIDER",
    "LLM_MAX_RETRIES",
    "LLM_API_KEY",
    "DEBUG",
]


def _clear(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    config = load_config()
    assert config.db_path == "budget_facts.db"
    assert config.output_dir == Path("outputs")
    assert config.agreement_tolerance == 0.01
    assert config.scale_ratio == 10000.0
    assert config.small_amount_guard == 1000.0
    assert config.llm_provider == "deepseek"
    assert config.llm_max_retries == 2
    assert config.debug is False


def test_invalid_values_fall_back_or_clamp(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("AGREEMENT_TOLERANCE", "abc")
    monkeypatch.setenv("SCALE_RATIO", "0.5")
    monkeypatch.setenv("SMALL_AMOUNT_GUARD", "-3")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("LLM_MAX_RETRIES", "9")
    monkeypatch.setenv("DEBUG", "TRUE")
    config = load_config()
    assert config.agreement_tolerance == 0.01
    assert config.scale_ratio == 10000.0
    assert config.small_amount_guard == 1000.0
    assert config.llm_provider == "deepseek"
    assert config.llm_max_retries == 5
    assert config.debug is True


def test_paths_from_env(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("BUDGET_FACTS_DB_PATH", str(tmp_path / "facts.db"))
    monkeypatch.setenv("BUDGET_FACTS_OUTPUT_DIR", str(tmp_path / "out"))
    config = load_config()
    assert config.db_path == str(tmp_path / "facts.db")
    assert config.output_dir == tmp_path / "out"
