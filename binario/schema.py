"""Schema engine: one validator type over pydantic models and raw JSON-Schema documents.

Tool parameters and structured-output targets both go through ``Schema``. The
normalized ``json_schema`` is what providers receive: pydantic titles are dropped
and ``$defs`` references are inlined so every backend sees a self-contained
document.
"""
from __future__ import annotations

import copy
import inspect
from typing import Any, Callable, Mapping, get_type_hints

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field, ValidationError, create_model

from binario.errors import SchemaValidationError

_LITERAL_KEYS = frozenset({"default", "enum", "const", "examples"})
_DROPPED_KEYS = frozenset({"title", "$defs", "definitions"})


class Schema:
    __slots__ = ("_json_schema", "_model", "_validator")

    def __init__(
        self,
        json_schema: Mapping[str, Any],
        *,
        model: type[BaseModel] | None = None,
    ) -> None:
        self._json_schema = normalize_json_schema(dict(json_schema))
        self._model = model
        self._validator = None if model is not None else Draft7Validator(self._json_schema)

    @classmethod
    def from_model(cls, model: type[BaseModel]) -> Schema:
        return cls(model.model_json_schema(), model=model)

    @classmethod
    def from_json_schema(cls, document: Mapping[str, Any]) -> Schema:
        try:
            Draft7Validator.check_schema(dict(document))
        except SchemaError as exc:
            raise SchemaValidationError(f"Invalid JSON schema: {exc.message}", [exc.message]) from exc
        return cls(copy.deepcopy(dict(document)))

    @classmethod
    def from_fields(cls, name: str, **fields: Any) -> Schema:
        """Build from ``name=(type, default)`` pairs, as ``pydantic.create_model`` takes them."""
        model: type[BaseModel] = create_model(name, **fields)  # type: ignore[call-overload]
        return cls.from_model(model)

    @classmethod
    def from_function(cls, func: Callable[..., Any], name: str | None = None) -> Schema:
        """Derive a parameter schema from a function signature.

        Parameters named ``ctx`` or ``context`` are skipped: the tool context is
        injected at call time, not chosen by the model.
        """
        sig = inspect.signature(func)
        hints = get_type_hints(func)
        fields: dict[str, tuple[Any, Any]] = {}
        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls", "ctx", "context"):
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue
            field_type = hints.get(param_name, str)
            if param.default is inspect.Parameter.empty:
                fields[param_name] = (field_type, Field(...))
            else:
                fields[param_name] = (field_type, Field(default=param.default))
        model_name = name or f"{func.__name__.title().replace('_', '')}Args"
        return cls.from_fields(model_name, **fields)

    @property
    def json_schema(self) -> dict[str, Any]:
        return copy.deepcopy(self._json_schema)

    @property
    def model(self) -> type[BaseModel] | None:
        return self._model

    def validate(self, value: Any) -> Any:
        """Return the validated value (a model instance for pydantic schemas)."""
        if self._model is not None:
            try:
                return self._model.model_validate(value)
            except ValidationError as exc:
                errors = [_format_pydantic_error(err) for err in exc.errors()]
                raise SchemaValidationError(f"Validation failed: {'; '.join(errors)}", errors) from exc

        assert self._validator is not None
        failures = sorted(self._validator.iter_errors(value), key=lambda e: list(e.absolute_path))
        if failures:
            errors = [_format_jsonschema_error(err) for err in failures]
            raise SchemaValidationError(f"Validation failed: {'; '.join(errors)}", errors)
        return value


def as_schema(value: Schema | type[BaseModel] | Mapping[str, Any]) -> Schema:
    if isinstance(value, Schema):
        return value
    if isinstance(value, type) and issubclass(value, BaseModel):
        return Schema.from_model(value)
    if isinstance(value, Mapping):
        return Schema.from_json_schema(value)
    raise TypeError(f"cannot build a schema from {type(value).__name__}")


def dump_value(value: Any) -> Any:
    """Plain-JSON view of a validated value."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def normalize_json_schema(document: dict[str, Any]) -> dict[str, Any]:
    defs: dict[str, Any] = {}
    defs.update(document.get("definitions") or {})
    defs.update(document.get("$defs") or {})
    normalized = _normalize(document, defs, ())
    return normalized if isinstance(normalized, dict) else {}


def _normalize(node: Any, defs: Mapping[str, Any], resolving: tuple[str, ...]) -> Any:
    if isinstance(node, list):
        return [_normalize(item, defs, resolving) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str):
        name = ref.rsplit("/", 1)[-1]
        target = defs.get(name)
        if target is not None:
            if name in resolving:
                # self-referencing model: stop expanding
                return {"type": "object"}
            merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
            return _normalize(merged, defs, resolving + (name,))

    out: dict[str, Any] = {}
    for key, value in node.items():
        if key in _DROPPED_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            out[key] = {prop: _normalize(sub, defs, resolving) for prop, sub in value.items()}
        elif key in _LITERAL_KEYS:
            out[key] = value
        else:
            out[key] = _normalize(value, defs, resolving)
    return out


def _format_pydantic_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = str(error.get("msg", "invalid value"))
    return f"{location}: {message}" if location else message


def _format_jsonschema_error(error: Any) -> str:
    location = ".".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message
