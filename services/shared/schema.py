"""Base model and field types for API-facing schemas.

Attributes are snake_case in Python and camelCase on the wire. Amounts are
Decimal in Python and plain JSON numbers on the wire.
"""

from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel


def json_number(value: Any) -> Any:
    """Render Decimals as floats for JSON output; leave anything else alone."""
    return float(value) if isinstance(value, Decimal) else value


Amount = Annotated[Decimal, PlainSerializer(json_number, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """BaseModel that accepts and emits camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(CamelModel):
    """Immutable variant for artifacts that must not change after creation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
