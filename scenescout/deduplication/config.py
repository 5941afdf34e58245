"""Configuration for the deduplication core.

Configuration is validated once, at construction time. Any invalid value
(weights that do not sum to 1.0, a threshold outside [0, 1], an unknown
algorithm or strategy name) raises ``ConfigurationError`` before any scoring
happens.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .string_similarity import available_algorithms


WEIGHT_TOLERANCE = 1e-6

SCORE_DIMENSIONS = ("title", "venue", "location", "date", "semantic")

KNOWN_MERGE_STRATEGIES = {
    "keep_primary",
    "merge_fields",
    "enhance_primary",
    "quality_based",
    "temporal_priority",
    "source_priority",
}


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class ThresholdConfig(_Section):
    """Minimum scores per dimension and for the overall score."""

    title: float = Field(default=0.85, ge=0.0, le=1.0)
    venue: float = Field(default=0.80, ge=0.0, le=1.0)
    location: float = Field(default=0.75, ge=0.0, le=1.0)
    date: float = Field(default=0.90, ge=0.0, le=1.0)
    semantic: float = Field(default=0.75, ge=0.0, le=1.0)
    overall: float = Field(default=0.80, ge=0.0, le=1.0)


class WeightConfig(_Section):
    """Weights of the five similarity dimensions; must sum to 1.0."""

    title: float = Field(default=0.35, ge=0.0, le=1.0)
    venue: float = Field(default=0.25, ge=0.0, le=1.0)
    location: float = Field(default=0.20, ge=0.0, le=1.0)
    date: float = Field(default=0.15, ge=0.0, le=1.0)
    semantic: float = Field(default=0.05, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_sum(self):
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"weights must sum to 1.0, got {total:.6f}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SCORE_DIMENSIONS}


class AlgorithmConfig(_Section):
    string_matching: str = "hybrid"
    semantic_matching: bool = True
    location_matching: bool = True
    fuzzy_date: bool = True

    @field_validator("string_matching")
    @classmethod
    def check_algorithm(cls, v):
        if v not in available_algorithms():
            raise ValueError(
                f"unknown string matching algorithm '{v}', "
                f"expected one of {available_algorithms()}"
            )
        return v


class PerformanceConfig(_Section):
    batch_size: int = Field(default=100, ge=1)
    max_candidates: int = Field(default=50, ge=1)
    enable_caching: bool = True
    parallel_processing: bool = False
    max_workers: int = Field(default=4, ge=1)
    cache_size: int = Field(default=10000, ge=1)
    cache_ttl_seconds: float = Field(default=3600.0, gt=0)


class QualityConfig(_Section):
    minimum_quality_score: float = Field(default=0.7, ge=0.0, le=1.0)
    require_manual_review: bool = False
    auto_merge_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    # Policy for matches scoring between thresholds.overall and auto_merge_threshold
    review_band_policy: Literal["manual_review", "auto_merge"] = "manual_review"
    low_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    slow_merge_ms: float = Field(default=1000.0, gt=0)
    manual_review_warning_rate: float = Field(default=0.3, ge=0.0, le=1.0)


class MatchingConfig(_Section):
    critical_dimensions: List[str] = Field(default_factory=lambda: ["title", "venue", "date"])
    date_horizon_days: float = Field(default=30.0, gt=0)
    max_distance_meters: float = Field(default=1000.0, gt=0)
    distance_falloff: Literal["linear", "inverse"] = "linear"
    coordinate_precision: int = Field(default=3, ge=0, le=8)
    block_by_city: bool = False
    default_merge_strategy: str = "merge_fields"

    @field_validator("critical_dimensions")
    @classmethod
    def check_dimensions(cls, v):
        unknown = [d for d in v if d not in SCORE_DIMENSIONS]
        if unknown:
            raise ValueError(f"unknown critical dimensions: {unknown}")
        return v

    @field_validator("default_merge_strategy")
    @classmethod
    def check_strategy(cls, v):
        if v not in KNOWN_MERGE_STRATEGIES:
            raise ValueError(f"unknown merge strategy '{v}'")
        return v


class DedupConfig(_Section):
    """Complete configuration accepted by ``DeduplicationSystem``."""

    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    weights: WeightConfig = Field(default_factory=WeightConfig)
    algorithms: AlgorithmConfig = Field(default_factory=AlgorithmConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)

    @model_validator(mode="after")
    def check_auto_merge_above_overall(self):
        if self.quality.auto_merge_threshold < self.thresholds.overall:
            raise ValueError(
                "quality.auto_merge_threshold must not be below thresholds.overall"
            )
        return self


ENV_OVERRIDES = {
    "SCENESCOUT_DEDUP_OVERALL_THRESHOLD": (("thresholds", "overall"), float),
    "SCENESCOUT_DEDUP_STRING_MATCHING": (("algorithms", "string_matching"), str),
    "SCENESCOUT_DEDUP_ENABLE_CACHING": (("performance", "enable_caching"), "bool"),
    "SCENESCOUT_DEDUP_PARALLEL": (("performance", "parallel_processing"), "bool"),
    "SCENESCOUT_DEDUP_AUTO_MERGE_THRESHOLD": (("quality", "auto_merge_threshold"), float),
}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(data: Any) -> Any:
    """Convert camelCase keys (``autoMergeThreshold``) to snake_case."""
    if isinstance(data, dict):
        return {_snake_case(k): _normalize_keys(v) for k, v in data.items()}
    return data


def _deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides."""
    for env_key, ((section, key), kind) in ENV_OVERRIDES.items():
        raw = os.getenv(env_key)
        if raw is None or raw == "":
            continue
        if kind == "bool":
            value = raw.lower() in ("true", "1", "yes")
        else:
            try:
                value = kind(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {env_key}: {raw!r}", config_key=f"{section}.{key}"
                ) from e
        config.setdefault(section, {})[key] = value
    return config


def build_config(
    config: Union[DedupConfig, Dict[str, Any], None] = None,
    **overrides: Any
) -> DedupConfig:
    """Validate a configuration mapping, converting failures to ``ConfigurationError``."""
    if isinstance(config, DedupConfig) and not overrides:
        return config

    if isinstance(config, DedupConfig):
        data = config.model_dump()
    else:
        data = _normalize_keys(config or {})
    if overrides:
        data = _deep_merge(data, _normalize_keys(overrides))

    try:
        return DedupConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        config_key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid deduplication configuration: {first.get('msg')}",
            config_key=config_key or None,
            context={"errors": e.errors(include_url=False)},
        ) from e


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> DedupConfig:
    """Load configuration from defaults, an optional JSON file, env and overrides.

    Args:
        path: JSON file with a (partial) configuration
        overrides: Values applied last, taking precedence over file and env

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If the file is unreadable or any value is invalid
    """
    config_dict: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        try:
            with open(config_path, "r") as f:
                config_dict = _normalize_keys(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Could not read configuration file {config_path}: {e}",
                context={"path": str(config_path)},
            ) from e

    config_dict = _apply_env_overrides(config_dict)

    if overrides:
        config_dict = _deep_merge(config_dict, _normalize_keys(overrides))

    return build_config(config_dict)
