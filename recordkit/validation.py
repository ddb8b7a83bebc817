"""
Argument checks for the public entry points.

Invalid arguments are rejected before any work starts, so no operation is ever
left half done because of a missing input.
"""
from typing import Any, Optional


def require_not_none(argument: Any, name: str, message: Optional[str] = None) -> None:
    """Raise ValueError if the argument is None."""
    if argument is None:
        raise ValueError(message or f"{name} cannot be None.")


def require_not_blank(argument: Optional[str], name: str, message: Optional[str] = None) -> None:
    """Raise ValueError if the argument is None, empty or whitespace."""
    if argument is None or not str(argument).strip():
        raise ValueError(message or f"{name} cannot be None, empty, or whitespace.")


def require_type(argument: Any, name: str) -> None:
    """Raise ValueError unless the argument is a class."""
    require_not_none(argument, name)
    if not isinstance(argument, type):
        raise ValueError(f"{name} must be a type, got {type(argument).__name__}.")
