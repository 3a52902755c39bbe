"""
Pydantic models for source snapshots and remote API responses.

This module defines the validated shape of records delivered by source
providers and the tolerant parsing of list responses returned by the
downstream systems.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .sync.exceptions import UnrecognizedResponseError


class SourceRecord(BaseModel):
    """
    One member record as delivered by a source provider.

    Attributes:
        external_id: Stable identifier from the source system (membership number)
        secondary_key: Human-meaningful key used for de-duplication (e.g. email)
        payload: Field values to push downstream, opaque to the sync engine
    """
    external_id: str = Field(..., min_length=1)
    secondary_key: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", "secondary_key", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        # Membership numbers frequently arrive as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class ListShape(Enum):
    """Known nesting shapes of list responses, in the order they are tried."""
    BARE_ARRAY = "bare_array"
    ITEMS = "Items"
    RESULTS = "Results"
    DATA = "Data"
    EMBEDDED = "_embedded"


class _ItemsEnvelope(BaseModel):
    Items: List[Dict[str, Any]]


class _ResultsEnvelope(BaseModel):
    Results: List[Dict[str, Any]]


class _DataEnvelope(BaseModel):
    Data: List[Dict[str, Any]]


class _EmbeddedEnvelope(BaseModel):
    embedded: Dict[str, Any] = Field(..., alias="_embedded")


_BARE_ARRAY = TypeAdapter(List[Dict[str, Any]])


@dataclass
class ListEnvelope:
    """Result of parsing a list response: the matched shape and its items."""
    shape: ListShape
    items: List[Dict[str, Any]]


def _parse_bare_array(body: Any) -> Optional[List[Dict[str, Any]]]:
    return _BARE_ARRAY.validate_python(body)


def _parse_items(body: Any) -> Optional[List[Dict[str, Any]]]:
    return _ItemsEnvelope.model_validate(body).Items


def _parse_results(body: Any) -> Optional[List[Dict[str, Any]]]:
    return _ResultsEnvelope.model_validate(body).Results


def _parse_data(body: Any) -> Optional[List[Dict[str, Any]]]:
    return _DataEnvelope.model_validate(body).Data


def _parse_embedded(body: Any) -> Optional[List[Dict[str, Any]]]:
    embedded = _EmbeddedEnvelope.model_validate(body).embedded
    for collection in embedded.values():
        if isinstance(collection, list):
            return _BARE_ARRAY.validate_python(collection)
    return None


_SHAPE_PARSERS = [
    (ListShape.BARE_ARRAY, _parse_bare_array),
    (ListShape.ITEMS, _parse_items),
    (ListShape.RESULTS, _parse_results),
    (ListShape.DATA, _parse_data),
    (ListShape.EMBEDDED, _parse_embedded),
]


def parse_list_envelope(body: Any) -> ListEnvelope:
    """
    Deserialize a list response into its items.

    Shapes are tried in the order of ``ListShape``; the first one that
    validates wins.

    Args:
        body: Decoded JSON body of a list endpoint

    Returns:
        ListEnvelope with the matched shape and the list of items

    Raises:
        UnrecognizedResponseError: If no known shape matches
    """
    for shape, parser in _SHAPE_PARSERS:
        try:
            items = parser(body)
        except ValidationError:
            continue
        if items is not None:
            return ListEnvelope(shape=shape, items=items)

    preview = repr(body)[:500]
    raise UnrecognizedResponseError(
        "List response has an unexpected structure",
        details={"tried": [shape.value for shape, _ in _SHAPE_PARSERS], "body_preview": preview},
    )
