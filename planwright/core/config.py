from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OllamaSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3", description="Default model served via Ollama.")
    temperature: float = Field(0.1, ge=0.0, le=1.0, description="Sampling temperature for agent calls.")
    num_ctx: int | None = Field(default=None, ge=512, description="Optional context window override.")


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True, description="Render log lines as JSON instead of console text.")


class CritiqueWeights(BaseModel):
    feasibility: float = Field(0.3, ge=0.0)
    correctness: float = Field(0.3, ge=0.0)
    efficiency: float = Field(0.15, ge=0.0)
    safety: float = Field(0.25, ge=0.0)

    @model_validator(mode="after")
    def _require_positive_total(self) -> "CritiqueWeights":
        if self.feasibility + self.correctness + self.efficiency + self.safety <= 0:
            raise ValueError("critique weights must not all be zero")
        return self


class CritiqueSettings(BaseModel):
    weights: CritiqueWeights = Field(default_factory=CritiqueWeights)  # type: ignore[arg-type]
    placeholder_penalty: float = Field(
        0.1,
        ge=0.0,
        le=1.0,
        description="Feasibility deducted for each unresolved parameter found in a plan.",
    )
    required_parameters: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Required parameter names per step action, used to flag missing parameters.",
    )


class ThresholdSettings(BaseModel):
    execute: float = Field(0.85, ge=0.0, le=1.0)
    review: float = Field(0.65, ge=0.0, le=1.0)
    rethink: float = Field(0.4, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _require_descending(self) -> "ThresholdSettings":
        if not self.execute >= self.review >= self.rethink:
            raise ValueError("thresholds must satisfy execute >= review >= rethink")
        return self


class ConfidenceSettings(BaseModel):
    thresholds: ThresholdSettings = Field(default_factory=ThresholdSettings)  # type: ignore[arg-type]
    agent_weights: dict[str, float] = Field(
        default_factory=dict,
        description="Per-agent weights for the confidence aggregate; agents not listed use default_weight.",
    )
    default_weight: float = Field(1.0, gt=0.0)
    high_score_floor: float = Field(0.8, ge=0.0, le=1.0, description="Scores at or above this count as high.")
    low_score_ceiling: float = Field(0.5, ge=0.0, le=1.0, description="Scores below this count as low.")
    mixed_variance: float = Field(0.04, ge=0.0, description="Variance above which agent scores are mixed.")

    @field_validator("agent_weights")
    @classmethod
    def _reject_negative(cls, value: dict[str, float]) -> dict[str, float]:
        for agent, weight in value.items():
            if weight < 0:
                raise ValueError(f"weight for {agent} must be non-negative")
        return value


class VersioningSettings(BaseModel):
    max_conflict_retries: int = Field(3, ge=0, description="Re-reads allowed after a plan version conflict.")


class PipelineSettings(BaseModel):
    step_timeout_seconds: float | None = Field(
        120.0,
        description="Seconds the coordinator waits on one agent call; None waits indefinitely.",
    )
    max_replans: int = Field(2, ge=0, description="Rethink cycles allowed before the request is escalated.")

    @field_validator("step_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("step_timeout_seconds must be positive")
        return value


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    ollama: OllamaSettings = Field(default_factory=OllamaSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]
    critique: CritiqueSettings = Field(default_factory=CritiqueSettings)  # type: ignore[arg-type]
    confidence: ConfidenceSettings = Field(default_factory=ConfidenceSettings)  # type: ignore[arg-type]
    versioning: VersioningSettings = Field(default_factory=VersioningSettings)  # type: ignore[arg-type]
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="PLANWRIGHT_",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
