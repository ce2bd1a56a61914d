from __future__ import annotations

import re

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def normalize_color(value: object) -> str | None:
    """Return the canonical `#rrggbb` form of a color, or None if it isn't one.

    Accepts `#rgb` shorthand and either case.
    """

    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not _HEX_COLOR.match(raw):
        return None
    digits = raw[1:].lower()
    if len(digits) == 3:
        digits = "".join(c * 2 for c in digits)
    return f"#{digits}"
