"""JSON Schema validation of wire-format source records."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import jsonschema
import orjson

SCHEMA_ROOT = Path(__file__).parent / "schemas"


@dataclass
class ValidationResult:
    """Outcome of validating a single record."""

    ok: bool
    errors: List[str]


class SchemaRegistry:
    """Lazily loads one JSON Schema per dialect."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = root or SCHEMA_ROOT
        self._validators: Dict[str, jsonschema.Draft202012Validator] = {}

    def _load(self, dialect: str) -> jsonschema.Draft202012Validator:
        if dialect not in self._validators:
            path = self._root / f"{dialect}.schema.json"
            if not path.exists():
                raise FileNotFoundError(f"Schema not found for {dialect}: {path}")
            schema = orjson.loads(path.read_text(encoding="utf-8"))
            self._validators[dialect] = jsonschema.Draft202012Validator(schema)
        return self._validators[dialect]

    def validate(self, dialect: str, payload: object) -> ValidationResult:
        validator = self._load(dialect)
        errors = [f"{error.json_path}: {error.message}" for error in validator.iter_errors(payload)]
        return ValidationResult(ok=not errors, errors=errors)
