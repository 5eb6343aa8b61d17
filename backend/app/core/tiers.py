"""
Content tier hierarchy.

Tiers form a strict total order:

| Tier         | Level | Unlocks                                   |
|--------------|-------|-------------------------------------------|
| picture      | 1     | Photo sets                                |
| solo_video   | 2     | Photo sets + solo videos                  |
| collab_video | 3     | Photo sets + solo videos + collaborations |

The mapping is a constant so access decisions never need I/O.
"""
from enum import Enum
from typing import Dict, Any, List, Union


class Tier(str, Enum):
    """Content access tiers, lowest first."""

    PICTURE = "picture"
    SOLO_VIDEO = "solo_video"
    COLLAB_VIDEO = "collab_video"


TIER_HIERARCHY: Dict[Tier, int] = {
    Tier.PICTURE: 1,
    Tier.SOLO_VIDEO: 2,
    Tier.COLLAB_VIDEO: 3,
}

TIER_DISPLAY: Dict[Tier, Dict[str, Any]] = {
    Tier.PICTURE: {
        "name": "Pictures",
        "description": "Access to photo sets",
    },
    Tier.SOLO_VIDEO: {
        "name": "Solo Video",
        "description": "Photo sets and solo videos",
    },
    Tier.COLLAB_VIDEO: {
        "name": "Collab Video",
        "description": "Everything, including collaboration videos",
    },
}


def parse_tier(value: Union[str, Tier]) -> Tier:
    """
    Coerce a string into a Tier.

    Raises:
        ValueError: If the value is not a known tier
    """
    if isinstance(value, Tier):
        return value
    try:
        return Tier(value)
    except ValueError:
        raise ValueError(f"Invalid tier: {value}. Must be one of: {[t.value for t in Tier]}")


def tier_level(tier: Union[str, Tier]) -> int:
    return TIER_HIERARCHY[parse_tier(tier)]


def tier_covers(held: Union[str, Tier], requested: Union[str, Tier]) -> bool:
    """True if holding ``held`` unlocks content gated at ``requested``."""
    return tier_level(held) >= tier_level(requested)


def tiers_unlocked_by(tier: Union[str, Tier]) -> List[Tier]:
    level = tier_level(tier)
    return [t for t, rank in sorted(TIER_HIERARCHY.items(), key=lambda item: item[1]) if rank <= level]
