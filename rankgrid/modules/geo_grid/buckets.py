"""Position classification and visibility weighting."""

from typing import Optional

from rankgrid.models.geo_grid import PositionBucket

VISIBILITY_WEIGHTS = {
    PositionBucket.TOP3: 1.0,
    PositionBucket.TOP10: 0.6,
    PositionBucket.TOP20: 0.3,
    PositionBucket.NONE: 0.0,
}


def classify_position(position: Optional[int]) -> PositionBucket:
    """Map a 1-based rank to its bucket. Missing or non-positive ranks are NONE."""
    if position is None or position < 1:
        return PositionBucket.NONE
    if position <= 3:
        return PositionBucket.TOP3
    if position <= 10:
        return PositionBucket.TOP10
    if position <= 20:
        return PositionBucket.TOP20
    return PositionBucket.NONE


def visibility_weight(bucket: PositionBucket | str) -> float:
    return VISIBILITY_WEIGHTS[PositionBucket(bucket)]
