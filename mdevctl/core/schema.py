"""JSON Schema validation for definitions and callout replies."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from typing import Any

from jsonschema import ValidationError, validators

from mdevctl.core.errors import MdevctlError

DEFINITION_SCHEMA = "definition.schema.json"
ATTRIBUTES_SCHEMA = "attributes.schema.json"
CAPABILITIES_SCHEMA = "capabilities.schema.json"


@lru_cache(maxsize=None)
def _load_schema_validator(name: str) -> Any:
    schema_text = resources.files("mdevctl.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def validate(doc: Any, schema_name: str, *, error_cls: type[MdevctlError], source: str) -> None:
    """Validate `doc`, raising `error_cls` with the failing location on mismatch."""
    validator = _load_schema_validator(schema_name)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise error_cls(f"Schema validation failed for {source}{where}: {exc.message}") from exc
