from __future__ import annotations

from typing import List
from pydantic import BaseModel, Field, field_validator, model_validator


class TrackableConfig(BaseModel):
    id: str = Field(default_factory=lambda: "g_" + __import__("uuid").uuid4().hex[:10])
    title: str
    exe_path: str

    @field_validator("exe_path")
    @classmethod
    def _non_empty_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("exe_path must not be empty")
        return value


class AppConfig(BaseModel):
    trackables: List[TrackableConfig] = Field(default_factory=list)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    # Seconds without detection before a run is considered over.
    session_timeout_seconds: float = Field(default=10.0, gt=0)
    catalog_ttl_seconds: float = Field(default=60.0, ge=0)
    snapshot_timeout_seconds: float = Field(default=4.0, gt=0)
    stop_flush_timeout_seconds: float = Field(default=5.0, gt=0)
    auto_discovery: bool = True
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @model_validator(mode="after")
    def _timeout_exceeds_interval(self) -> "AppConfig":
        if self.session_timeout_seconds <= self.poll_interval_seconds:
            raise ValueError("session_timeout_seconds must be greater than poll_interval_seconds")
        return self

    def to_monitor_config(self) -> dict:
        return {
            "poll_interval_seconds": self.poll_interval_seconds,
            "session_timeout_seconds": self.session_timeout_seconds,
            "catalog_ttl_seconds": self.catalog_ttl_seconds,
            "snapshot_timeout_seconds": self.snapshot_timeout_seconds,
            "stop_flush_timeout_seconds": self.stop_flush_timeout_seconds,
            "auto_discovery": self.auto_discovery,
        }
