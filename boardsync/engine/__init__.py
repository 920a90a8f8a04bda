from boardsync.engine.collection import (
    PlatformAction,
    determine_platform_action,
    is_low_quality_image,
    merge_partitions,
)
from boardsync.engine.normalizer import (
    CatalogRecord,
    Difficulty,
    minutes_to_play_time,
    normalize,
    weight_to_difficulty,
)

__all__ = [
    "CatalogRecord",
    "Difficulty",
    "PlatformAction",
    "determine_platform_action",
    "is_low_quality_image",
    "merge_partitions",
    "minutes_to_play_time",
    "normalize",
    "weight_to_difficulty",
]
