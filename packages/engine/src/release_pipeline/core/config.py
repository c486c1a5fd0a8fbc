from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RELEASE_PIPELINE_",
        env_file=".env",
        extra="ignore",
    )

    artifact_root: Path = Field(default=Path("_artifacts"))
    run_root: Path = Field(default=Path("_runs"))
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    max_parallel_actions: int = Field(default=8, ge=1)
    # None keeps approval gates waiting until someone decides.
    approval_timeout_s: Optional[float] = Field(default=None, gt=0)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
