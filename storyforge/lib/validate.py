"""
JSON Schema checks for the two files storyforge owns.

The spec (prd.json) and the run state (.storyforge/state.json) are checked
against storyforge/schemas/<name>.schema.json on every load and before
every write. All violations are reported at once, not just the first.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"
SCHEMA_NAMES = ("spec", "state")

# More than this and the message stops being useful to a human
MAX_REPORTED_ERRORS = 5


class ValidationError(Exception):
    """A document did not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


@lru_cache(maxsize=None)
def _validator(schema_name: str) -> jsonschema.Draft202012Validator:
    if schema_name not in SCHEMA_NAMES:
        raise ValidationError(schema_name, f"Unknown schema (expected one of {', '.join(SCHEMA_NAMES)})")
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    try:
        schema = json.loads(schema_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(schema_name, f"Cannot read schema {schema_path}: {e}") from None
    jsonschema.Draft202012Validator.check_schema(schema)
    return jsonschema.Draft202012Validator(schema)


def _json_path(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path) or "(root)"


def validate(data: Any, schema_name: str) -> None:
    """
    Check parsed JSON against the named schema.

    Raises:
        ValidationError: With the first offending path in .path and up to
            MAX_REPORTED_ERRORS messages joined in the text
    """
    errors = sorted(_validator(schema_name).iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    if not errors:
        return

    first = errors[0]
    if len(errors) == 1:
        raise ValidationError(schema_name, first.message, _json_path(first))

    shown = errors[:MAX_REPORTED_ERRORS]
    details = "; ".join(f"{_json_path(e)}: {e.message}" for e in shown)
    more = len(errors) - len(shown)
    if more:
        details += f"; and {more} more"
    raise ValidationError(schema_name, f"{len(errors)} problems: {details}", _json_path(first))


def validate_file(filepath: Path, schema_name: str) -> dict:
    """Read a JSON file, check it, and return the parsed document."""
    try:
        text = filepath.read_text()
    except FileNotFoundError:
        raise ValidationError(schema_name, f"File not found: {filepath}") from None
    except OSError as e:
        raise ValidationError(schema_name, f"Cannot read {filepath}: {e}") from None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON in {filepath}: {e}") from None

    validate(data, schema_name)
    return data


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to persist a document that would fail its own schema on reload."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(schema_name, f"Refusing to write invalid data to {filepath}: {e}") from None
