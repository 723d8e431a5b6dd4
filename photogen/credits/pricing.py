"""Credit cost of a generation request."""

from __future__ import annotations

import math

from photogen.services.stages import GenerationMode

SIZE_MULTIPLIERS = {"standard": 1.0, "large": 1.5}
QUALITY_MULTIPLIERS = {"standard": 1.0, "hd": 2.0}
MODE_MULTIPLIERS = {GenerationMode.NORMAL: 1.0, GenerationMode.POSE_VARIATION: 0.8}


def calculate_cost(
    count: int,
    *,
    credits_per_image: int = 1,
    size: str = "standard",
    quality: str = "standard",
    mode: GenerationMode = GenerationMode.NORMAL,
) -> int:
    """Return the number of credits reserved for ``count`` images."""

    raw = (
        credits_per_image
        * count
        * SIZE_MULTIPLIERS[size]
        * QUALITY_MULTIPLIERS[quality]
        * MODE_MULTIPLIERS[mode]
    )
    # round() first so float noise like 2.0000000004 does not add a credit.
    return max(1, math.ceil(round(raw, 6)))
