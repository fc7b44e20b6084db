"""
taloscluster/models/validator.py

Validation of untyped JSON payloads (Hetzner API responses, talosctl and
kubectl JSON output) against pydantic models or typing constructs.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` using a pydantic TypeAdapter.

    Args:
        obj (Any): Decoded JSON value.
        expected_type (Type[T]): Model or typing construct, e.g. Dict[str, Any].

    Returns:
        T: The validated (and, for models, parsed) object.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Unexpected payload for {expected_type}: {e}") from e
