import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv


@dataclass
class AppConfig:
    db_path: str
    output_dir: Path
    agreement_tolerance: float
    scale_ratio: float
    scale_ratio_tolerance: float
    scale_inverse_ratio_tolerance: float
    large_amount_threshold: float
    small_amount_guard: float
    llm_provider: str
    llm_model_name: str
    llm_api_key: str
    llm_base_url: str
    llm_timeout_seconds: int
    llm_max_retries: int
    debug: bool


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if value != value or value < minimum:
        return default
    return value


def load_config() -> AppConfig:
    load_dotenv()
    provider = os.getenv("LLM_PROVIDER", "deepseek").strip().lower()
    if provider != "deepseek":
        provider = "deepseek"

    try:
        llm_max_retries = int(os.getenv("LLM_MAX_RETRIES", "2"))
    except ValueError:
        llm_max_retries = 2
    llm_max_retries = max(0, min(llm_max_retries, 5))

    return AppConfig(
        db_path=os.getenv("BUDGET_FACTS_DB_PATH", "budget_facts.db"),
        output_dir=Path(os.getenv("BUDGET_FACTS_OUTPUT_DIR", "outputs")),
        agreement_tolerance=_float_env("AGREEMENT_TOLERANCE", 0.01),
        scale_ratio=_float_env("SCALE_RATIO", 10000.0, minimum=1.0),
        scale_ratio_tolerance=_float_env("SCALE_RATIO_TOLERANCE", 1.0),
        scale_inverse_ratio_tolerance=_float_env("SCALE_INVERSE_RATIO_TOLERANCE", 0.000001),
        large_amount_threshold=_float_env("LARGE_AMOUNT_THRESHOLD", 10000000.0),
        small_amount_guard=_float_env("SMALL_AMOUNT_GUARD", 1000.0),
        llm_provider=provider,
        llm_model_name=os.getenv("LLM_MODEL_NAME", "deepseek-chat"),
        llm_api_key=os.getenv("LLM_API_KEY", ""),
        llm_base_url=os.getenv("LLM_BASE_URL", "https://api.deepseek.com"),
        llm_timeout_seconds=int(os.getenv("LLM_TIMEOUT_SECONDS", "90")),
        llm_max_retries=llm_max_retries,
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )
