"""Pure helpers deriving presentation data from a participant id."""

import re

# Avatar palette, indexed by a stable hash of the user id.
USER_COLORS = (
    "#ef4444",
    "#f97316",
    "#f59e0b",
    "#84cc16",
    "#10b981",
    "#06b6d4",
    "#3b82f6",
    "#6366f1",
    "#8b5cf6",
    "#d946ef",
    "#ec4899",
    "#14b8a6",
)


def user_id_from_name(name: str) -> str:
    """Derive a user id from a display name.

    Examples:
        >>> user_id_from_name("Ada  Lovelace")
        'ada-lovelace'
    """
    return re.sub(r"\s+", "-", name.strip().lower())


def display_name(user_id: str) -> str:
    """Turn a user id back into a display name.

    Examples:
        >>> display_name("ada-lovelace")
        'Ada Lovelace'
    """
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), user_id.replace("-", " "))


def user_color(user_id: str) -> str:
    """Pick a deterministic avatar color for a user id."""
    h = 0
    for ch in user_id:
        h = (ord(ch) + ((h << 5) - h)) & 0xFFFFFFFF
    return USER_COLORS[h % len(USER_COLORS)]


def format_file_size(num_bytes: int) -> str:
    """Render a byte count for humans.

    Examples:
        >>> format_file_size(0)
        '0 Bytes'
        >>> format_file_size(1536)
        '1.5 KB'
    """
    if num_bytes <= 0:
        return "0 Bytes"
    sizes = ("Bytes", "KB", "MB", "GB")
    i = 0
    value = float(num_bytes)
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {sizes[i]}"
