"""
Structured output handling - parse generator replies into validated pydantic models.

Replies are handled in three explicit steps:
  1. strip_code_fences  - drop markdown ```json wrappers
  2. coerce_payload     - schema-driven auto-fix (lowercase enum strings,
                          split strings into lists where a list is expected)
  3. model_validate     - pydantic validation against the target schema

Each step is a pure function so the auto-fix rules can be tested alone.
"""

from __future__ import annotations

import json
import re
import types
from enum import Enum
from typing import Any, Dict, List, Literal, Type, TypeVar, Union, get_args, get_origin

from langchain_core.output_parsers import JsonOutputParser
from pydantic import BaseModel, ValidationError

from penny.core.errors import StructuredOutputError

T = TypeVar("T", bound=BaseModel)

_OPENING_FENCE = re.compile(r"^```[a-zA-Z]*\s*")
_CLOSING_FENCE = re.compile(r"\s*```$")
_LIST_SPLIT = re.compile(r"(?:\d+\.\s*|\n+|;\s*)")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _OPENING_FENCE.sub("", cleaned)
        cleaned = _CLOSING_FENCE.sub("", cleaned)
    return cleaned.strip()


def split_to_list(value: str) -> List[str]:
    """
    Split a string that should have been a list.

    Numbered items ("1. a 2. b"), newlines and semicolons all count as
    separators. A string with a single item becomes a one-element list.
    """
    items = [part.strip() for part in _LIST_SPLIT.split(value)]
    items = [item for item in items if item]
    if len(items) > 1:
        return items
    return [value.strip()]


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def coerce_value(value: Any, annotation: Any) -> Any:
    """Coerce a single value toward the shape its annotation expects."""
    if value is None:
        return None

    annotation = _unwrap_optional(annotation)
    origin = get_origin(annotation)

    if origin is Literal:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in get_args(annotation):
                return lowered
        return value

    if isinstance(annotation, type) and issubclass(annotation, Enum):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    if origin in (list, set, tuple):
        args = get_args(annotation)
        item_type = args[0] if args else Any
        if isinstance(value, str):
            value = split_to_list(value)
        if isinstance(value, list):
            return [coerce_value(item, item_type) for item in value]
        return value

    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        if isinstance(value, dict):
            return coerce_payload(value, annotation)

    return value


def coerce_payload(payload: Dict[str, Any], schema: Type[BaseModel]) -> Dict[str, Any]:
    """
    Apply the auto-fix rules to a decoded JSON object.

    Args:
        payload: Decoded JSON object from the generator
        schema: Target pydantic model

    Returns:
        A new dict; the input is not mutated. camelCase keys are accepted
        for snake_case fields. Unknown keys pass through untouched.
    """
    coerced = dict(payload)
    for name, field in schema.model_fields.items():
        key = name
        if key not in coerced:
            camel = _camel(name)
            if camel in coerced:
                coerced[name] = coerced.pop(camel)
            else:
                continue
        coerced[key] = coerce_value(coerced[key], field.annotation)
    return coerced


def build_structured_prompt(prompt: str, schema: Type[BaseModel]) -> str:
    """Append JSON format instructions for the schema to a prompt."""
    parser = JsonOutputParser(pydantic_object=schema)
    return (
        f"{prompt}\n\n"
        f"{parser.get_format_instructions()}\n\n"
        "Respond with ONLY the JSON object. No explanation, no markdown."
    )


def parse_structured(text: str, schema: Type[T]) -> T:
    """
    Parse a generator reply into an instance of schema.

    Raises:
        StructuredOutputError: the reply is not JSON or fails validation
    """
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        # Some replies wrap the object in prose; fall back to the outermost braces.
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise StructuredOutputError("Reply is not valid JSON", raw_text=text)
        try:
            payload = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as exc:
            raise StructuredOutputError(f"Reply is not valid JSON: {exc}", raw_text=text) from exc

    if not isinstance(payload, dict):
        raise StructuredOutputError(
            f"Expected a JSON object, got {type(payload).__name__}", raw_text=text
        )

    try:
        return schema.model_validate(coerce_payload(payload, schema))
    except ValidationError as exc:
        raise StructuredOutputError(
            f"Reply does not match {schema.__name__}: {exc.error_count()} error(s)",
            raw_text=text,
        ) from exc
