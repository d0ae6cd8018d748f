from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOG_DIR = BASE_DIR / "logs"
DB_PATH = DATA_DIR / "attendance.db"

# Scheduler defaults (seconds)
MIN_INTERVAL_SECONDS = 2.0
MAX_QUEUE_SIZE = 3
COOLDOWN_AFTER_SUCCESS_SECONDS = 5.0
COOLDOWN_AFTER_FAILURE_SECONDS = 3.0
MAX_ATTEMPTS_PER_MINUTE = 15
RATE_WINDOW_SECONDS = 60.0

# Single-slot variant, driven by a fixed-interval poll
SINGLE_SLOT_COOLDOWN_SECONDS = 3.0
SINGLE_SLOT_MIN_INTERVAL_SECONDS = 1.0
POLL_INTERVAL_SECONDS = 1.0

# Recognition settings (Euclidean distance units)
RECOGNITION_THRESHOLD = 0.6

SchedulerMode = Literal["queued", "single_slot"]


@dataclass(frozen=True)
class SchedulerConfig:
    mode: SchedulerMode = "queued"
    min_interval_seconds: float = MIN_INTERVAL_SECONDS
    max_queue_size: int = MAX_QUEUE_SIZE
    cooldown_after_success_seconds: float = COOLDOWN_AFTER_SUCCESS_SECONDS
    cooldown_after_failure_seconds: float = COOLDOWN_AFTER_FAILURE_SECONDS
    max_attempts_per_minute: int = MAX_ATTEMPTS_PER_MINUTE
    single_slot_cooldown_seconds: float = SINGLE_SLOT_COOLDOWN_SECONDS
    single_slot_min_interval_seconds: float = SINGLE_SLOT_MIN_INTERVAL_SECONDS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.mode not in ("queued", "single_slot"):
            raise ValueError(f"Unknown scheduler mode: {self.mode!r}")
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1.")
        if self.max_attempts_per_minute < 1:
            raise ValueError("max_attempts_per_minute must be at least 1.")
        for name in (
            "min_interval_seconds",
            "cooldown_after_success_seconds",
            "cooldown_after_failure_seconds",
            "single_slot_cooldown_seconds",
            "single_slot_min_interval_seconds",
            "poll_interval_seconds",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative.")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATTENDANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Classroom Attendance"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    log_dir: Path = LOG_DIR
    db_path: Path = DB_PATH
    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    # Import path of the signature extractor, "package.module:attribute".
    extractor: str = ""

    recognition_threshold: float = Field(default=RECOGNITION_THRESHOLD, gt=0.0)

    scheduler_mode: SchedulerMode = "queued"
    min_interval_seconds: float = Field(default=MIN_INTERVAL_SECONDS, ge=0.0)
    max_queue_size: int = Field(default=MAX_QUEUE_SIZE, ge=1)
    cooldown_after_success_seconds: float = Field(default=COOLDOWN_AFTER_SUCCESS_SECONDS, ge=0.0)
    cooldown_after_failure_seconds: float = Field(default=COOLDOWN_AFTER_FAILURE_SECONDS, ge=0.0)
    max_attempts_per_minute: int = Field(default=MAX_ATTEMPTS_PER_MINUTE, ge=1)
    single_slot_cooldown_seconds: float = Field(default=SINGLE_SLOT_COOLDOWN_SECONDS, ge=0.0)
    single_slot_min_interval_seconds: float = Field(default=SINGLE_SLOT_MIN_INTERVAL_SECONDS, ge=0.0)
    poll_interval_seconds: float = Field(default=POLL_INTERVAL_SECONDS, gt=0.0)

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            mode=self.scheduler_mode,
            min_interval_seconds=self.min_interval_seconds,
            max_queue_size=self.max_queue_size,
            cooldown_after_success_seconds=self.cooldown_after_success_seconds,
            cooldown_after_failure_seconds=self.cooldown_after_failure_seconds,
            max_attempts_per_minute=self.max_attempts_per_minute,
            single_slot_cooldown_seconds=self.single_slot_cooldown_seconds,
            single_slot_min_interval_seconds=self.single_slot_min_interval_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
