from typing import Any, Dict, Iterable, Mapping, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from edgefeed.config.settings import settings

from .enums import SortBy


class ConfigurationError(Exception):
    """Raised when an OpportunityConfig update is rejected."""

    pass


def _lowered(values: Optional[Iterable[str]]) -> Set[str]:
    if values is None:
        return set()
    if isinstance(values, str):
        values = [values]
    return {str(v).strip().lower() for v in values if str(v).strip()}


class OpportunityConfig(BaseModel):
    """User thresholds and filters applied to detection and ranking.

    Empty ``selected_markets``, ``selected_sports`` or ``book_filter`` mean
    "no restriction". ``max_stake`` of ``None`` means the whole bankroll.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_profit_percent: float = Field(
        default_factory=lambda: settings.min_profit_percent, ge=0, allow_inf_nan=False
    )
    min_middle_gap: float = Field(
        default_factory=lambda: settings.min_middle_gap, ge=0, allow_inf_nan=False
    )
    min_middle_probability: float = Field(
        default_factory=lambda: settings.min_middle_probability,
        ge=0,
        le=1,
        allow_inf_nan=False,
    )
    max_stake: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    selected_markets: Set[str] = set()
    selected_sports: Set[str] = set()
    book_filter: Set[str] = set()
    sort_by: SortBy = SortBy.PROFIT

    @field_validator("selected_markets", "selected_sports", "book_filter", mode="before")
    @classmethod
    def normalize_keys(cls, value: Any) -> Set[str]:
        return _lowered(value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OpportunityConfig":
        """Build a config, turning validation failures into ConfigurationError."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid opportunity config: {e}") from e

    @classmethod
    def coerce(
        cls, value: Union["OpportunityConfig", Mapping[str, Any], None]
    ) -> "OpportunityConfig":
        if value is None:
            return cls()
        if isinstance(value, OpportunityConfig):
            return value
        if isinstance(value, Mapping):
            return cls.from_mapping(value)
        raise ConfigurationError(
            f"Expected OpportunityConfig or mapping, got {type(value).__name__}"
        )

    def merged(self, updates: Mapping[str, Any]) -> "OpportunityConfig":
        """Return a new config with ``updates`` applied on top of this one."""
        data: Dict[str, Any] = self.model_dump()
        data.update(updates)
        return self.from_mapping(data)

    def effective_max_stake(self, bankroll: float) -> float:
        """Stake cap for one opportunity: min(max_stake, bankroll), never negative."""
        bankroll = max(float(bankroll), 0.0)
        if self.max_stake is None:
            return bankroll
        return min(self.max_stake, bankroll)

    def accepts_market(self, market_key: str) -> bool:
        return not self.selected_markets or market_key.lower() in self.selected_markets

    def accepts_sport(self, sport_key: str) -> bool:
        return not self.selected_sports or sport_key.lower() in self.selected_sports

    def accepts_book(self, bookmaker_key: str) -> bool:
        return not self.book_filter or bookmaker_key.lower() in self.book_filter
