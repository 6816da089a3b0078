from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from examly.utils.error_taxonomy import InputError


@dataclass(frozen=True, slots=True)
class CostTier:
    max_images: int
    credits: int


DEFAULT_TIERS = (
    CostTier(max_images=5, credits=1),
    CostTier(max_images=10, credits=2),
    CostTier(max_images=15, credits=3),
)
DEFAULT_CREDITS_PER_PACK = 30


@dataclass(frozen=True, slots=True)
class Pricing:
    tiers: tuple[CostTier, ...] = DEFAULT_TIERS
    credits_per_pack: int = DEFAULT_CREDITS_PER_PACK

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Pricing":
        generation = config.get("generation") or {}
        raw_tiers = generation.get("tiers") if isinstance(generation, dict) else None
        tiers: list[CostTier] = []
        for item in raw_tiers or []:
            if not isinstance(item, dict):
                raise ValueError(f"Invalid pricing tier: {item!r}")
            tiers.append(
                CostTier(max_images=int(item["max_images"]), credits=int(item["credits"]))
            )
        tiers.sort(key=lambda tier: tier.max_images)
        if any(tier.credits <= 0 for tier in tiers):
            raise ValueError("Pricing tier credits must be positive")

        purchase = config.get("purchase") or {}
        credits_per_pack = int(
            purchase.get("credits_per_pack", DEFAULT_CREDITS_PER_PACK)
            if isinstance(purchase, dict)
            else DEFAULT_CREDITS_PER_PACK
        )
        return cls(tiers=tuple(tiers) or DEFAULT_TIERS, credits_per_pack=credits_per_pack)

    @property
    def max_images(self) -> int:
        return self.tiers[-1].max_images

    def generation_cost(self, images_count: int) -> int:
        for tier in self.tiers:
            if images_count <= tier.max_images:
                return tier.credits
        raise InputError(
            f"At most {self.max_images} images can be attached",
            code="TOO_MANY_FILES",
        )
