"""Half-open UTC calendar date ranges."""

from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, model_validator


def as_utc_date(value: Any) -> Any:
    """
    Coerce a datetime (aware or naive-as-UTC) or ISO datetime string to its UTC
    calendar date. Plain dates and anything else pass through for pydantic to check.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, str) and len(value.strip()) > 10:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return as_utc_date(parsed)
    return value


class DateRange(BaseModel):
    """Half-open interval [start, end) of calendar dates."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError(f"end {self.end} precedes start {self.start}")
        return self

    def contains(self, day: Optional[date]) -> bool:
        return day is not None and self.start <= day < self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"
