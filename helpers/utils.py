# helpers/utils.py
"""
Small text and formatting helpers shared by the RCON services.
"""

from typing import Optional


def break_message(message: str, limit: int) -> list[str]:
    """
    Split a message into chunks no longer than ``limit`` on word boundaries.

    Whitespace runs collapse to a single space. A single word longer than
    the limit becomes its own chunk rather than being cut.

    Args:
        message: Text to split
        limit: Maximum chunk length

    Returns:
        List of chunks, empty when the message has no words
    """
    chunks: list[str] = []
    current = ""

    for word in message.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= limit:
            current = f"{current} {word}"
        else:
            chunks.append(current)
            current = word

    if current:
        chunks.append(current)

    return chunks


def seconds_to_dhms(seconds: int) -> str:
    """Format a duration as '1d 2h 3m 4s', dropping leading zero units."""
    seconds = max(0, int(seconds))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if days or hours:
        parts.append(f"{hours}h")
    if days or hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)


def strip_port(address: Optional[str]) -> Optional[str]:
    """Return the host part of an 'ip:port' address."""
    if not address:
        return address
    if ":" in address:
        return address.rsplit(":", 1)[0]
    return address


def sanitize_quotes(text: str) -> str:
    # Console arguments are wrapped in double quotes
    return text.replace('"', "'")
