from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "AutoApply"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8787
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/autoapply.db"
    data_dir: Path = Path("./data")

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_personalize: str = "gpt-5-mini"
    openai_model_grounding: str = "gpt-5"
    openai_model_explain: str = "gpt-5-mini"
    openai_timeout_sec: int = 60

    local_llm_enabled: bool = True
    local_llm_base_url: str = "http://localhost:11434/v1"
    local_llm_api_key: str = "local"
    local_llm_model: str = "qwen2.5:14b-instruct"
    local_llm_timeout_sec: int = 90

    llm_router_default: str = "openai"
    llm_router_evidence_provider: str = "openai"
    llm_router_answers_provider: str = "openai"
    llm_router_grounding_provider: str = "openai"
    llm_router_explain_provider: str = "local"

    job_window_size: int = 50
    grounding_min_score: int = 60
    max_submit_attempts: int = 3
    submit_backoff_base_sec: float = 1.0
    submit_timeout_sec: int = 30
    submit_user_agent: str = "AutoApply/0.1"
    sandbox_sources: str = "sandbox"
    sandbox_url_marker: str = "sandbox.autojob.com"

    apply_queue_max_attempts: int = 3
    apply_queue_backoff_sec: float = 5.0
    apply_worker_concurrency: int = 5
    apply_rate_limit_max: int = 10
    apply_rate_limit_window_sec: float = 60.0
    discovery_queue_max_attempts: int = 1
    discovery_worker_concurrency: int = 1
    queue_poll_interval_sec: float = 1.0
    queue_stale_after_sec: int = 900

    cors_origins: str = "http://127.0.0.1:8787"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("grounding_min_score")
    @classmethod
    def validate_grounding_min_score(cls, value: int) -> int:
        if not 0 <= value <= 100:
            raise ValueError("grounding_min_score must be between 0 and 100")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def sandbox_source_set(self) -> set[str]:
        return {item.strip().lower() for item in self.sandbox_sources.split(",") if item.strip()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
