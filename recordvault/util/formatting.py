"""
Human-readable rendering helpers shared by reports and log messages.
"""


def format_bytes(size: int) -> str:
    """Render a byte count for humans (e.g. 1.5 KB)."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def format_percentage(part: int, total: int) -> str:
    """Percentage with one decimal; 0.0% when total is zero."""
    if not total:
        return "0.0%"
    return f"{part / total * 100:.1f}%"
