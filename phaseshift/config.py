"""Configuration utilities for the Phaseshift daemon."""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .mutation import MutationConstraints
from .orchestrator import OrchestratorConfig
from .snapshots import RetentionPolicy

load_dotenv()


class Settings(BaseSettings):
    """Environment-backed settings, read from ``PHASESHIFT_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="PHASESHIFT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    snapshot_key: Optional[str] = Field(default=None, description="Secret encrypting persisted snapshots")
    data_directory: Path = Field(default=Path("/var/lib/phaseshift"))
    apply_backend: Literal["memory", "iptables"] = "memory"
    rules_path: Optional[Path] = None

    sensitivity: float = Field(default=0.85, ge=0.0, le=1.0)
    suspect_watermark: float = Field(default=0.5, ge=0.0, le=1.0)
    suspect_release: float = Field(default=0.4, ge=0.0, le=1.0)
    decay_window_seconds: float = Field(default=30.0, ge=0.0)

    max_collapses: int = Field(default=10, ge=1)
    rate_window_seconds: float = Field(default=3600.0, gt=0.0)

    port_range_start: int = Field(default=20000, ge=1, le=65535)
    port_range_end: int = Field(default=60999, ge=1, le=65535)
    reserved_ports: Annotated[List[int], NoDecode] = Field(default_factory=list)
    services: Annotated[List[int], NoDecode] = Field(default_factory=lambda: [22, 80, 443])
    history_depth: int = Field(default=4, ge=0)

    identity_subjects: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["operator"])
    identity_ttl_seconds: float = Field(default=3600.0, gt=0.0)
    identity_overlap_seconds: float = Field(default=30.0, ge=0.0)

    snapshot_attempts: int = Field(default=3, ge=1)
    mutation_attempts: int = Field(default=3, ge=1)
    apply_attempts: int = Field(default=3, ge=1)
    call_timeout_seconds: float = Field(default=5.0, gt=0.0)
    quiesce_timeout_seconds: float = Field(default=5.0, ge=0.0)

    evaluation_interval_seconds: float = Field(default=1.0, gt=0.0)
    evaluation_window_seconds: float = Field(default=60.0, gt=0.0)
    max_event_skew_seconds: float = Field(default=5.0, ge=0.0)
    event_capacity: int = Field(default=10_000, ge=1)

    retention_max_count: Optional[int] = Field(default=10, ge=1)
    retention_max_age_hours: Optional[float] = Field(default=None, gt=0.0)

    base_sampling_rate: float = Field(default=1.0, gt=0.0)
    heightened_sampling_rate: float = Field(default=10.0, gt=0.0)

    @field_validator("reserved_ports", "services", mode="before")
    @classmethod
    def _split_ports(cls, value):
        if isinstance(value, str):
            return [int(part) for part in _split(value)]
        return value

    @field_validator("identity_subjects", mode="before")
    @classmethod
    def _split_subjects(cls, value):
        if isinstance(value, str):
            return _split(value)
        return value

    @field_validator("data_directory", mode="before")
    @classmethod
    def _expand_path(cls, value):
        if isinstance(value, str):
            return Path(value).expanduser()
        if isinstance(value, Path):
            return value.expanduser()
        raise ValueError("data_directory must be a filesystem path")

    @field_validator("rules_path", "snapshot_key", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if value in (None, ""):
            return None
        return value

    @model_validator(mode="after")
    def _check_ordering(self) -> "Settings":
        if not self.suspect_release < self.suspect_watermark <= self.sensitivity:
            raise ValueError("expected suspect_release < suspect_watermark <= sensitivity")
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        return self

    # ------------------------------------------------------------------
    # Derived objects
    # ------------------------------------------------------------------
    @property
    def snapshot_directory(self) -> Path:
        return self.data_directory / "snapshots"

    @property
    def ledger_path(self) -> Path:
        return self.data_directory / "collapses.jsonl"

    @property
    def resolved_rules_path(self) -> Path:
        return self.rules_path or self.data_directory / "phaseshift.rules"

    def retention_policy(self) -> RetentionPolicy:
        max_age = timedelta(hours=self.retention_max_age_hours) if self.retention_max_age_hours else None
        return RetentionPolicy(max_count=self.retention_max_count, max_age=max_age)

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            sensitivity=self.sensitivity,
            suspect_watermark=self.suspect_watermark,
            suspect_release=self.suspect_release,
            decay_window=timedelta(seconds=self.decay_window_seconds),
            max_collapses=self.max_collapses,
            rate_window=timedelta(seconds=self.rate_window_seconds),
            snapshot_attempts=self.snapshot_attempts,
            mutation_attempts=self.mutation_attempts,
            apply_attempts=self.apply_attempts,
            call_timeout=self.call_timeout_seconds,
            quiesce_timeout=self.quiesce_timeout_seconds,
            retention=self.retention_policy(),
            base_sampling_rate=self.base_sampling_rate,
            heightened_sampling_rate=self.heightened_sampling_rate,
        )

    def mutation_constraints(self) -> MutationConstraints:
        return MutationConstraints(
            port_range=(self.port_range_start, self.port_range_end),
            reserved_ports=frozenset(self.reserved_ports),
            history_depth=self.history_depth,
            identity_ttl=timedelta(seconds=self.identity_ttl_seconds),
            identity_overlap=timedelta(seconds=self.identity_overlap_seconds),
            services=frozenset(self.services),
            subjects=frozenset(self.identity_subjects),
        )


def _split(value: str) -> List[str]:
    parts = [part.strip() for part in value.replace("\n", ",").replace(" ", ",").split(",")]
    return [part for part in parts if part]


@lru_cache()
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings"]
