"""Human readable formatting helpers."""


SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def format_size(size: float, precision: int = 2) -> str:
    """
    Format a byte count with a binary unit.

    Args:
        size: Number of bytes
        precision: Digits after the decimal point

    Returns:
        String such as ``'1.50 MB'``
    """
    value = float(size)
    unit = SIZE_UNITS[0]

    for next_unit in SIZE_UNITS[1:]:
        if value <= 1024.0:
            break
        value /= 1024.0
        unit = next_unit

    return f"{value:.{precision}f} {unit}"


def format_duration(seconds: float) -> str:
    """Render a duration as ``HH:MM:SS``; negative values render as zero."""
    total = int(seconds) if seconds > 0 else 0
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
