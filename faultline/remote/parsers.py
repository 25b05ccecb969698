"""
faultline Output Parsers

Parsers turn the standard output of a successful remote command into a
value. A parser raises :class:`ParseError` when the output does not have
the expected shape.
"""

from __future__ import annotations

import json
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from faultline.errors import ParseError
from faultline.types import ClusterStatus, StatusDocument

T = TypeVar("T")

Parser = Callable[[str], T]


def parse_as_string(output: str) -> str:
    """Return the output unchanged."""
    return output


def parse_as_trimmed(output: str) -> str:
    """Return the output without surrounding whitespace."""
    return output.strip()


def parse_json(output: str) -> Any:
    """Decode the output as a JSON document."""
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON output: {e}", cause=e) from e


def parse_status(output: str) -> ClusterStatus:
    """Decode the cluster status document printed by the status command."""
    try:
        document = StatusDocument.model_validate_json(output)
    except ValidationError as e:
        raise ParseError(f"invalid status document: {e}", cause=e) from e
    return document.cluster
