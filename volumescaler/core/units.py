"""Size and percentage parsing.

Capacities are compared in GiB. Sizes carry a ``Mi``, ``Gi`` or ``Ti`` suffix;
a bare number is already GiB.
"""

import math
import re

from volumescaler.utils.errors import InvalidSize, InvalidPercentage

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(.*)$")

UNIT_FACTORS = {
    "": 1.0,
    "Gi": 1.0,
    "Mi": 1.0 / 1024,
    "Ti": 1024.0,
}


def to_base_unit(size_str: str) -> float:
    """Convert a size string such as "5Gi", "512Mi" or "1Ti" to GiB.

    Raises:
        InvalidSize: If the string is empty, has no leading number or an unknown unit
    """
    if size_str is None or not str(size_str).strip():
        raise InvalidSize(size_str, "empty size")
    match = _SIZE_PATTERN.match(str(size_str).strip())
    if not match:
        raise InvalidSize(size_str, "missing numeric value")
    number, unit = match.groups()
    if unit not in UNIT_FACTORS:
        raise InvalidSize(size_str, f"unknown unit '{unit}'")
    return float(number) * UNIT_FACTORS[unit]


def to_percent(percent_str: str) -> float:
    """Parse "70%" or "70" into 70.0."""
    if percent_str is None:
        raise InvalidPercentage(percent_str)
    text = str(percent_str).strip()
    if text.endswith("%"):
        text = text[:-1]
    try:
        value = float(text)
    except ValueError:
        raise InvalidPercentage(percent_str)
    if math.isnan(value) or math.isinf(value):
        raise InvalidPercentage(percent_str)
    return value


def to_ratio(percent_str: str) -> float:
    """Parse "20%" into 0.2."""
    return to_percent(percent_str) / 100.0


def format_size(size_gi: float) -> str:
    """Render a GiB value as a quantity string.

    Whole GiB values render as "7Gi"; anything else is rounded up to whole MiB
    so the requested size never falls below the computed one.
    """
    if float(size_gi).is_integer():
        return f"{int(size_gi)}Gi"
    size_mi = math.ceil(round(size_gi * 1024, 6))
    if size_mi % 1024 == 0:
        return f"{size_mi // 1024}Gi"
    return f"{size_mi}Mi"
