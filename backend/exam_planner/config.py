import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    agent_model: str = Field("gpt-5", alias="EXAM_PLANNER_AGENT_MODEL")
    agent_reasoning: Literal["minimal", "low", "medium", "high"] = Field("low", alias="EXAM_PLANNER_AGENT_REASONING")
    content_max_chars: int = Field(30000, ge=1000, alias="EXAM_PLANNER_CONTENT_MAX_CHARS")
    content_update_base_chars: int = Field(10000, ge=0, alias="EXAM_PLANNER_CONTENT_UPDATE_BASE_CHARS")
    content_retry_attempts: int = Field(2, ge=0, alias="EXAM_PLANNER_CONTENT_RETRY_ATTEMPTS")
    content_retry_delay_seconds: float = Field(4.0, ge=0.0, alias="EXAM_PLANNER_CONTENT_RETRY_DELAY_SECONDS")
    database_url: Optional[str] = Field(None, alias="EXAM_PLANNER_DATABASE_URL")
    database_pool_size: int = Field(10, alias="EXAM_PLANNER_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="EXAM_PLANNER_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="EXAM_PLANNER_DATABASE_ECHO")
    persistence_mode: Literal["database", "legacy", "hybrid"] = Field(
        "legacy",
        alias="EXAM_PLANNER_PERSISTENCE_MODE",
    )
    data_dir: Optional[str] = Field(None, alias="EXAM_PLANNER_DATA_DIR")
    student_timezone: Optional[str] = Field(None, alias="EXAM_PLANNER_TIMEZONE")
    max_subjects_per_day: int = Field(2, ge=1, alias="EXAM_PLANNER_MAX_SUBJECTS_PER_DAY")
    window_limit_days: int = Field(180, ge=1, alias="EXAM_PLANNER_WINDOW_LIMIT_DAYS")
    rebalance_on_create: bool = Field(True, alias="EXAM_PLANNER_REBALANCE_ON_CREATE")
    rebalance_on_task_toggle: bool = Field(False, alias="EXAM_PLANNER_REBALANCE_ON_TASK_TOGGLE")
    save_delay_seconds: float = Field(0.0, ge=0.0, alias="EXAM_PLANNER_SAVE_DELAY_SECONDS")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()  # type: ignore[arg-type]
        if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
            os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
