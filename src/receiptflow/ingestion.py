"""
Parsing of pasted receipt data.

Two payload shapes are accepted::

    {"receipts": [...], "bounties": [...]}   preferred; bounties optional
    [...]                                    legacy bare list of receipts

Anything else, including invalid JSON, fails the whole paste.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List

from pydantic import ValidationError as PydanticValidationError

from .errors import ParseError
from .models import Receipt, Bounty

logger = logging.getLogger(__name__)


@dataclass
class PastePayload:
    receipts: List[Receipt] = field(default_factory=list)
    bounties: List[Bounty] = field(default_factory=list)
    legacy: bool = False


def parse_paste(text: str) -> PastePayload:
    """Parse pasted text into receipts and bounties.

    Raises:
        ParseError: If the text is not JSON, not a recognised shape, or
            contains entries that are not receipt objects
    """
    try:
        parsed = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ParseError(f"Pasted text is not valid JSON: {e}") from e

    if isinstance(parsed, dict) and isinstance(parsed.get("receipts"), list):
        bounties_raw = parsed.get("bounties") or []
        if not isinstance(bounties_raw, list):
            raise ParseError("'bounties' must be a list")
        return PastePayload(
            receipts=_parse_items(parsed["receipts"], Receipt, "receipt"),
            bounties=_parse_items(bounties_raw, Bounty, "bounty"),
            legacy=False,
        )

    if isinstance(parsed, list):
        return PastePayload(receipts=_parse_items(parsed, Receipt, "receipt"), legacy=True)

    raise ParseError("Unrecognised receipt data: expected {receipts: [...]} or a list of receipts")


def _parse_items(items: List[Any], model, kind: str) -> list:
    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ParseError(f"{kind} #{index} is not an object")
        try:
            parsed.append(model.model_validate(item))
        except PydanticValidationError as e:
            raise ParseError(f"{kind} #{index} is invalid: {e}") from e
    return parsed
