import string
from typing import List

# Device temperature units map linearly onto 7000K (143) .. 2900K (344)
TEMPERATURE_UNIT_MIN = 143
TEMPERATURE_UNIT_MAX = 344
KELVIN_MAX = 7000
KELVIN_MIN = 2900


def units_to_kelvin(value: int) -> int:
    """Convert a device temperature value to Kelvin"""
    return round((-4100 * value + 1993300) / 201)


def kelvin_to_units(kelvin: int) -> int:
    """Convert Kelvin to the nearest device temperature value"""
    return round((1993300 - 201 * kelvin) / 4100)


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def normalize_mac(value: str) -> str:
    """
    Normalize a MAC address to upper-case colon notation.

    Anything that is not 12 hex digits after stripping separators is returned
    unchanged so serial numbers survive as identifiers.
    """
    if not value:
        return ""
    cleaned = value.strip().replace(":", "").replace("-", "").replace(".", "")
    if len(cleaned) == 12 and all(ch in string.hexdigits for ch in cleaned):
        pairs = [cleaned[i : i + 2] for i in range(0, 12, 2)]
        return ":".join(pair.upper() for pair in pairs)
    return value.strip()


def fade_steps(current: int, target: int) -> List[int]:
    """Brightness levels one percent apart from ``current`` (exclusive) to ``target``"""
    step = 1 if target >= current else -1
    return list(range(current + step, target + step, step))
