"""Bidirectional mapping between internal hex colors and Google color ids.

Google Calendar only accepts event colors from a closed palette of eleven
ids. Internal colors are free-form hex strings, so outbound writes collapse
them onto the palette and inbound reads of provider-originated events expand
palette ids back into hex.
"""

from __future__ import annotations

DEFAULT_EVENT_COLOR = "#3B82F6"
DEFAULT_FAMILY_COLOR = "#8B5CF6"
FALLBACK_COLOR_ID = "9"

# Google's event palette ("Lavender" .. "Tomato").
COLOR_ID_TO_HEX: dict[str, str] = {
    "1": "#7986CB",
    "2": "#33B679",
    "3": "#8E24AA",
    "4": "#E67C73",
    "5": "#F6BF26",
    "6": "#F4511E",
    "7": "#039BE5",
    "8": "#616161",
    "9": "#3F51B5",
    "10": "#0B8043",
    "11": "#D50000",
}

# Member colors offered by the app, mapped to their closest palette entry.
_APP_COLOR_TO_COLOR_ID: dict[str, str] = {
    "#EF4444": "11",
    "#F97316": "6",
    "#F59E0B": "5",
    "#10B981": "10",
    "#06B6D4": "7",
    "#3B82F6": "9",
    "#6366F1": "1",
    "#8B5CF6": "3",
    "#EC4899": "4",
    "#6B7280": "8",
}

HEX_TO_COLOR_ID: dict[str, str] = {
    **_APP_COLOR_TO_COLOR_ID,
    **{hex_value: color_id for color_id, hex_value in COLOR_ID_TO_HEX.items()},
}


def normalize_hex(value: str) -> str:
    normalized = value.strip().upper()
    if normalized and not normalized.startswith("#"):
        normalized = f"#{normalized}"
    return normalized


def to_color_id(hex_color: str | None) -> str:
    """Return the Google color id for *hex_color* (case-insensitive).

    Unknown or missing colors map to :data:`FALLBACK_COLOR_ID`.
    """
    if not hex_color:
        return FALLBACK_COLOR_ID
    return HEX_TO_COLOR_ID.get(normalize_hex(hex_color), FALLBACK_COLOR_ID)


def to_hex(color_id: str | int | None) -> str | None:
    """Return the palette hex for a Google color id, or ``None`` when unknown."""
    if color_id is None:
        return None
    return COLOR_ID_TO_HEX.get(str(color_id).strip())
