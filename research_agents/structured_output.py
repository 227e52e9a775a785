"""
Best-effort structured extraction from generated text.

Generation backends answer in free-form text that usually, but not always,
embeds a JSON object. Extraction is lossy by nature:

- a fenced ```json block wins; otherwise the first decodable {...} object
- the object is validated against a pydantic model whose fields all have
  defaults; fields that fail validation fall back to their defaults
- no decodable object at all yields the model's defaults

The outcome records whether a block was found and which fields fell back,
so callers can tell a real answer from defaults.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

FENCED_BLOCK = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)

_decoder = json.JSONDecoder()


@dataclass
class Extraction(Generic[M]):
    """Parsed value plus how much of it came from the text."""
    value: M
    found_block: bool
    fallback_fields: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.found_block and not self.fallback_fields


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the first JSON object embedded in text, or None."""
    if not text:
        return None

    for match in FENCED_BLOCK.finditer(text):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    # Scan each opening brace; raw_decode stops at the end of a valid object
    position = text.find("{")
    while position != -1:
        try:
            data, _ = _decoder.raw_decode(text, position)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
        position = text.find("{", position + 1)

    return None


def parse_structured(text: Optional[str], model: Type[M]) -> Extraction[M]:
    """Extract and validate a JSON object, falling back to model defaults."""
    data = extract_json_object(text)
    if data is None:
        logger.debug(f"No JSON object found for {model.__name__}; using defaults")
        return Extraction(value=model(), found_block=False, fallback_fields=list(model.model_fields))

    try:
        return Extraction(value=model.model_validate(data), found_block=True)
    except pydantic.ValidationError:
        pass

    # Keep what validates field by field
    accepted: Dict[str, Any] = {}
    rejected: List[str] = []
    for name in model.model_fields:
        if name not in data:
            continue
        try:
            model.model_validate({name: data[name]})
        except pydantic.ValidationError:
            rejected.append(name)
            continue
        accepted[name] = data[name]

    logger.debug(f"{model.__name__}: fields {rejected} invalid, using defaults for them")
    return Extraction(value=model.model_validate(accepted), found_block=True, fallback_fields=rejected)
