"""Analytics settings loaded from YAML."""

from pathlib import Path
from typing import Literal

try:
    import yaml
except ModuleNotFoundError as e:
    raise ModuleNotFoundError(
        "PyYAML is required for settings loading. Run: poetry install"
    ) from e
from pydantic import BaseModel, Field

from pipeline_insights.stages import CLOSED_LOST, CLOSED_WON, STAGE_ORDER, VALIDATION


class AnalyticsSettings(BaseModel):
    """Explicit configuration passed into the service and engines."""

    db_path: Path = Path("pipeline_insights.db")

    value_field: Literal["year1_value", "amount", "tcv"] = "year1_value"
    pipeline_excluded_stages: list[str] = Field(
        default_factory=lambda: [CLOSED_WON, CLOSED_LOST, VALIDATION],
        description="Stages that never count as open pipeline",
    )
    include_validation_in_funnel: bool = Field(
        default=True,
        description="Count the qualification stage in closing-probability funnels",
    )
    stage_order: list[str] = Field(default_factory=lambda: list(STAGE_ORDER))

    stale_baseline_days: int = Field(default=7, ge=0)
    walk_interval_days: int = Field(default=7, ge=1)

    log_level: str = "WARNING"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AnalyticsSettings":
        """Load settings from YAML. Supports nested (analytics/attribution/storage) or flat structure."""
        data = yaml.safe_load(Path(path).read_text()) or {}
        flat: dict = {}
        sections = [data.get("storage", {}), data.get("analytics", {}), data.get("attribution", {})]

        def _get(key: str):
            for section in sections:
                if key in section:
                    return section[key]
            return data.get(key)

        for key in cls.model_fields:
            value = _get(key)
            if value is not None:
                flat[key] = value
        return cls.model_validate(flat)
