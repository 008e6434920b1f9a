"""Printing / condition alias normalization for upstream variant fields."""
from __future__ import annotations

PRINTING_MAP: dict[str, str] = {
    "normal": "normal",
    "holofoil": "holofoil",
    "reverse_holofoil": "reverse_holofoil",
    "foil": "holofoil",
    "holo": "holofoil",
    "rev": "reverse_holofoil",
    "reverse": "reverse_holofoil",
}

CONDITION_MAP: dict[str, str] = {
    "mint": "mint",
    "near_mint": "near_mint",
    "lightly_played": "lightly_played",
    "moderately_played": "moderately_played",
    "heavily_played": "heavily_played",
    "damaged": "damaged",
    "nm": "near_mint",
    "lp": "lightly_played",
    "mp": "moderately_played",
    "hp": "heavily_played",
    "dmg": "damaged",
}


def _key(value: str) -> str:
    return value.strip().lower().replace(" ", "_").replace("-", "_")


def normalize_printing(value: str | None) -> str | None:
    """Map a printing alias to its canonical name; unknown values pass through."""
    if not value:
        return None
    return PRINTING_MAP.get(_key(value), value)


def normalize_condition(value: str | None) -> str | None:
    if not value:
        return None
    return CONDITION_MAP.get(_key(value), value)


__all__ = ["normalize_printing", "normalize_condition", "PRINTING_MAP", "CONDITION_MAP"]
