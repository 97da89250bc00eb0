from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from edgefeed.utils.calcs import american_to_decimal, format_american, validate_american


class Outcome(BaseModel):
    """One priced selection inside a bookmaker's market."""

    model_config = ConfigDict(frozen=True)  # Make instances immutable

    name: str = Field(..., min_length=1, description="Team name, Over/Under, etc.")
    price: int = Field(..., description="American odds, never zero.")
    point: Optional[float] = Field(
        None, description="Spread or total line for this selection, if any."
    )
    description: Optional[str] = Field(
        None, description="Participant for player/team prop markets."
    )

    @field_validator("price", mode="before")
    @classmethod
    def check_price(cls, value: Any) -> int:
        # ArithmeticDegenerate is a ValueError, so pydantic reports it as a validation error
        return validate_american(value)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()

    @computed_field  # type: ignore[misc]
    @property
    def decimal_odds(self) -> float:
        return american_to_decimal(self.price)

    @computed_field  # type: ignore[misc]
    @property
    def implied_probability(self) -> float:
        """Implied probability (0-1) from the decimal odds."""
        return 1 / self.decimal_odds

    @property
    def selection_label(self) -> str:
        """Human-readable selection, e.g. ``Bills -3.5`` or ``Over 45.5``."""
        prefix = f"{self.description} " if self.description else ""
        if self.point is None:
            return f"{prefix}{self.name}"
        lower = self.name.lower()
        if lower in ("over", "under"):
            return f"{prefix}{self.name} {self.point:g}"
        sign = "+" if self.point > 0 else ""
        return f"{prefix}{self.name} {sign}{self.point:g}"

    def __str__(self) -> str:
        return f"{self.selection_label} ({format_american(self.price)})"
