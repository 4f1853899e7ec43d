"""Resource and duration unit parsing.

Memory:   ^[0-9]+(Ki|Mi|Gi|Ti|K|M|G|T)?$  (K/M/G/T are binary, same as Ki/Mi/Gi/Ti)
CPU:      ^[0-9]+m$ (millicores) or a bare integer (whole cores)
Duration: bare seconds ("90"), or any of h/m/s in order ("1h30m", "45s")
"""

from __future__ import annotations

import re

MEMORY_PATTERN = re.compile(r"^([0-9]+)(Ki|Mi|Gi|Ti|K|M|G|T)?$")
CPU_PATTERN = re.compile(r"^([0-9]+)(m)?$")
DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")

_MEMORY_FACTORS = {
    None: 1,
    "K": 1024,
    "Ki": 1024,
    "M": 1024**2,
    "Mi": 1024**2,
    "G": 1024**3,
    "Gi": 1024**3,
    "T": 1024**4,
    "Ti": 1024**4,
}


def parse_memory(value: str | int) -> int:
    """Parse a memory quantity into bytes.

    Raises:
        ValueError: If the quantity does not match the memory grammar.
    """
    text = str(value).strip()
    match = MEMORY_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid memory quantity: {value!r}")
    number, unit = match.groups()
    return int(number) * _MEMORY_FACTORS[unit]


def parse_cpu(value: str | int) -> int:
    """Parse a CPU quantity into millicores.

    Raises:
        ValueError: If the quantity does not match the CPU grammar.
    """
    text = str(value).strip()
    match = CPU_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid CPU quantity: {value!r}")
    number, milli = match.groups()
    return int(number) if milli else int(number) * 1000


def parse_duration(value: str | int | float) -> float:
    """Parse a duration into seconds.

    Raises:
        ValueError: If the duration is empty or malformed.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)

    text = str(value).strip()
    if text.isdigit():
        return float(text)

    match = DURATION_PATTERN.match(text)
    if not text or not match or not any(match.groups()):
        raise ValueError(f"Invalid duration: {value!r}")
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return float(hours * 3600 + minutes * 60 + seconds)


def format_duration(seconds: float | None) -> str:
    """Render seconds as a compact duration string ("1h30m", "45s")."""
    if seconds is None:
        return "unbounded"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


def format_memory(num_bytes: int | None) -> str:
    """Render bytes using the largest exact binary unit."""
    if num_bytes is None:
        return "unbounded"
    for unit in ("Ti", "Gi", "Mi", "Ki"):
        factor = _MEMORY_FACTORS[unit]
        if num_bytes >= factor and num_bytes % factor == 0:
            return f"{num_bytes // factor}{unit}"
    return str(num_bytes)


def format_cpu(millicores: int | None) -> str:
    """Render millicores as cores when whole, else as "<n>m"."""
    if millicores is None:
        return "unbounded"
    if millicores % 1000 == 0:
        return str(millicores // 1000)
    return f"{millicores}m"
