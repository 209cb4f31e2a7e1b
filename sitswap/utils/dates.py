"""Calendar date helpers."""

from datetime import date


def today() -> date:
    """Today's calendar date on the server clock."""
    return date.today()
