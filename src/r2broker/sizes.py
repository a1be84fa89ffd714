"""Byte size helpers."""

_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(num_bytes: int, decimals: int = 2) -> str:
    """Format a byte count using 1024-based units.

    Examples:
        >>> format_size(512)
        '512 B'
        >>> format_size(100 * 1024 * 1024)
        '100.00 MB'
    """
    size = float(num_bytes)
    for unit in _UNITS:
        if size < 1024 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.{decimals}f} {unit}"
        size /= 1024
    return f"{size:.{decimals}f} {_UNITS[-1]}"
