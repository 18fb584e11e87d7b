"""Coordinator configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings. Every heuristic constant is overridable via COLLECTIVE_*."""

    model_config = SettingsConfigDict(
        env_prefix="COLLECTIVE_",
        env_file=".env",
        extra="ignore",
    )

    # Storage / logging
    data_dir: Path = Path.home() / ".collective"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False

    # Trust ledger
    trust_learning_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    trust_failure_multiplier: float = Field(default=1.5, gt=0.0)
    trust_decay_rate: float = Field(default=0.01, ge=0.0, le=1.0)
    trust_decay_idle_seconds: float = Field(default=0.0, ge=0.0)

    # Communication mesh
    queue_capacity: int | None = Field(default=None, gt=0)

    # Negotiation
    negotiation_max_rounds: int = Field(default=5, gt=0)
    negotiation_counter_factor: float = Field(default=0.9, gt=0.0)
    acceptance_base: float = 0.3
    acceptance_trust_weight: float = 0.4
    acceptance_round_weight: float = 0.1

    # Experience store / pattern recognition
    experience_capacity: int = Field(default=10_000, gt=0)
    recognition_interval: int = Field(default=10, gt=0)
    background_learning: bool = False
    pattern_min_samples: int = Field(default=3, gt=0)
    pattern_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    pattern_reinforcement_weight: float = Field(default=0.1, gt=0.0, le=1.0)
    pattern_deprecation_frequency: int = Field(default=5, ge=0)
    pattern_deprecation_success_rate: float = Field(default=0.3, ge=0.0, le=1.0)

    # Evolution
    evolution_interval: int = Field(default=100, gt=0)
    plateau_window: int = Field(default=20, gt=1)
    plateau_variance: float = Field(default=0.001, ge=0.0)
    survival_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    mutation_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    mutation_low: float = Field(default=0.8, gt=0.0)
    mutation_high: float = Field(default=1.2, gt=0.0)
    crossover_parents: int = Field(default=4, ge=2)
    fitness_success_delta: float = 0.01
    fitness_failure_delta: float = -0.005
    fitness_efficiency_bonus: float = 0.005
    fitness_efficiency_ratio: float = Field(default=0.8, gt=0.0)
    fitness_innovation_bonus: float = 0.01

    # Team prediction
    prediction_success_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    prediction_max_alternatives: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def check_mutation_range(self) -> Settings:
        if self.mutation_low > self.mutation_high:
            raise ValueError("mutation_low must not exceed mutation_high")
        return self

    @property
    def archive_path(self) -> Path:
        return self.data_dir / "data" / "snapshots.db"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
