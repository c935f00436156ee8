"""Confidence policy: rank extracted items for surfacing.

The score is a pure function of the item and the current time:

    score = confidence_weight * confidence_factor
          + variant_weight
          + min(age_days, age_cap_days) / age_cap_days * age_weight

Higher confidence, a more urgent variant, and a longer time left
unhandled all raise the score. Age stops counting after ``age_cap_days``.
Ranking never affects persistence or lifecycle.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING

from commintel.extraction.models import Confidence, ExtractedItem, Variant, as_utc, utc_now

if TYPE_CHECKING:
    from commintel.config_schema import RankingConfig

CONFIDENCE_WEIGHTS: dict[Confidence, float] = {
    Confidence.HIGH: 3.0,
    Confidence.MEDIUM: 2.0,
    Confidence.LOW: 1.0,
}

DEFAULT_VARIANT_WEIGHTS: dict[Variant, float] = {
    Variant.DEADLINE: 3.0,
    Variant.COMMITMENT: 2.0,
    Variant.ACTION_ITEM: 1.0,
}


class ConfidencePolicy:
    """Scores and orders items.

    Attributes:
        variant_weights: Weight per variant
        age_cap_days: Age beyond which the age term stops growing
        age_weight: Maximum contribution of the age term
        confidence_factor: Multiplier on the confidence weight
    """

    def __init__(
        self,
        variant_weights: Mapping[Variant | str, float] | None = None,
        age_cap_days: float = 14.0,
        age_weight: float = 1.0,
        confidence_factor: float = 1.0,
    ):
        weights = dict(DEFAULT_VARIANT_WEIGHTS)
        for variant, weight in (variant_weights or {}).items():
            weights[Variant(variant)] = float(weight)
        self.variant_weights = weights
        self.age_cap_days = age_cap_days
        self.age_weight = age_weight
        self.confidence_factor = confidence_factor

    @classmethod
    def from_config(cls, config: RankingConfig) -> ConfidencePolicy:
        return cls(
            variant_weights=config.variant_weights,
            age_cap_days=config.age_cap_days,
            age_weight=config.age_weight,
            confidence_factor=config.confidence_factor,
        )

    def rank(self, item: ExtractedItem, now: datetime | None = None) -> float:
        """Score one item. Higher is more important."""
        now = as_utc(now) if now is not None else utc_now()
        score = CONFIDENCE_WEIGHTS[item.confidence] * self.confidence_factor
        score += self.variant_weights[item.variant]
        if item.created_at is not None and self.age_cap_days > 0:
            age_days = max((now - item.created_at).total_seconds() / 86400, 0.0)
            score += min(age_days, self.age_cap_days) / self.age_cap_days * self.age_weight
        return score

    def sort_items(
        self, items: Iterable[ExtractedItem], now: datetime | None = None
    ) -> list[ExtractedItem]:
        """Order items by descending score; ties by created_at, then id."""
        now = as_utc(now) if now is not None else utc_now()
        floor = datetime.min.replace(tzinfo=now.tzinfo)
        return sorted(
            items,
            key=lambda item: (-self.rank(item, now), item.created_at or floor, item.id),
        )
