from __future__ import annotations

MIN_TIER = 1
MAX_TIER = 10

# (minimum attendance, tier), highest threshold first
TIER_THRESHOLDS = (
    (10, 10),
    (7, 7),
    (5, 5),
    (2, 2),
    (0, MIN_TIER),
)

TIER_LABELS = {
    1: "Vibe Check",
    5: "Regular",
    10: "GΛRO Family",
}


def calculate_tier(attendance_count: int) -> int:
    for minimum, tier in TIER_THRESHOLDS:
        if attendance_count >= minimum:
            return tier
    return MIN_TIER


def tier_label(tier: int) -> str:
    return TIER_LABELS.get(tier, f"Tier {tier}")
