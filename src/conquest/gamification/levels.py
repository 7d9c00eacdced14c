"""Level thresholds and computation.

A level is earned every XP_PER_LEVEL points; titles change at the levels
listed in LEVEL_TITLES and carry over to the levels in between.
"""

from __future__ import annotations

XP_PER_LEVEL = 1000

LEVEL_TITLES: list[dict] = [
    {"level": 1, "title": "Wanderer"},
    {"level": 3, "title": "Scout"},
    {"level": 5, "title": "Pathfinder"},
    {"level": 8, "title": "Trailblazer"},
    {"level": 12, "title": "Explorer"},
    {"level": 16, "title": "Conqueror"},
    {"level": 20, "title": "Warlord"},
    {"level": 30, "title": "Legend of the Map"},
]


def title_for_level(level: int) -> str:
    title = LEVEL_TITLES[0]["title"]
    for entry in LEVEL_TITLES:
        if level >= entry["level"]:
            title = entry["title"]
    return title


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP."""
    total_xp = max(0, total_xp)
    level = total_xp // XP_PER_LEVEL + 1
    return {
        "level": level,
        "title": title_for_level(level),
        "xp_into_level": total_xp - (level - 1) * XP_PER_LEVEL,
        "xp_for_level": XP_PER_LEVEL,
        "next_level": level + 1,
        "next_title": title_for_level(level + 1),
    }
