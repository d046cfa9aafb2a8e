"""Model catalog: parameter schemas, input rules and price tables per model.

The catalog is data, loaded from ``config/models.toml``. Parameter fields come in
four closed variants (select, boolean, number, string list); validation and
pricing dispatch over them in one place rather than through subclasses.
"""

from __future__ import annotations

import math
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Union

from ..core.config import settings
from ..core.errors import RequestError

JOB_TYPES = ("image", "video")
INPUT_KINDS = ("image", "video")


class UnknownModelError(RequestError):
    code = "unknown_model"
    default_message = "Model not found"


class InvalidParamsError(RequestError):
    code = "invalid_params"
    default_message = "Invalid params"


class InvalidInputsError(RequestError):
    code = "invalid_inputs"
    default_message = "Invalid inputs"


class InvalidPromptError(RequestError):
    code = "invalid_body"
    default_message = "Prompt is required"


class CatalogConfigError(ValueError):
    """Raised when the catalog file itself is malformed."""


@dataclass(frozen=True)
class SelectField:
    key: str
    label: str
    options: tuple[str, ...]
    default: str | None = None
    required: bool = False
    help: str | None = None


@dataclass(frozen=True)
class BooleanField:
    key: str
    label: str
    default: bool = False
    help: str | None = None


@dataclass(frozen=True)
class NumberField:
    key: str
    label: str
    min: float | None = None
    max: float | None = None
    step: float | None = None
    default: float | None = None
    required: bool = False
    help: str | None = None


@dataclass(frozen=True)
class StringListField:
    key: str
    label: str
    separator: str = ","
    max_items: int | None = None
    default: tuple[str, ...] = ()
    help: str | None = None


ParamField = Union[SelectField, BooleanField, NumberField, StringListField]

_FIELD_KINDS: dict[str, type] = {
    "select": SelectField,
    "boolean": BooleanField,
    "number": NumberField,
    "string_list": StringListField,
}


def field_kind(param: ParamField) -> str:
    for kind, cls in _FIELD_KINDS.items():
        if isinstance(param, cls):
            return kind
    raise TypeError(f"Unknown parameter field: {param!r}")


@dataclass(frozen=True)
class InputRule:
    kind: str
    min: int
    max: int
    max_size_mb: int = 30
    mime_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class InputItem:
    kind: str
    path: str

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "path": self.path}


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    name: str
    type: str
    description: str = ""
    prompt_required: bool = True
    inputs: InputRule | None = None
    params: tuple[ParamField, ...] = ()
    price_keys: tuple[str, ...] = ()
    price_table: dict[str, int] = field(default_factory=dict)
    max_units: int = 1

    @property
    def allows_batch(self) -> bool:
        return self.max_units > 1


@dataclass(frozen=True)
class ValidatedRequest:
    model: ModelDefinition
    prompt: str
    params: dict[str, Any]
    inputs: tuple[InputItem, ...]


class InputCheck(NamedTuple):
    ok: bool
    message: str | None = None


def check_input_count(rule: InputRule | None, inputs: Iterable[InputItem]) -> InputCheck:
    """Check observed inputs against a model's ``{kind, min, max}`` rule."""
    items = list(inputs)
    if rule is None:
        if items:
            return InputCheck(False, "Input files are not supported for this model.")
        return InputCheck(True)

    kind_label = "videos" if rule.kind == "video" else "images"
    if len(items) < rule.min or len(items) > rule.max:
        return InputCheck(False, f"Expected {rule.min}-{rule.max} {kind_label}.")

    wrong = next((item for item in items if item.kind != rule.kind), None)
    if wrong is not None:
        return InputCheck(False, f"Wrong input kind: {wrong.kind}.")
    return InputCheck(True)


def _validate_field(param: ParamField, present: bool, value: Any) -> tuple[Any, str | None]:
    """Return ``(normalized_value, error)`` for one parameter."""
    if isinstance(param, SelectField):
        if not present:
            if param.default is not None:
                return param.default, None
            if param.required:
                return None, f"{param.key}: value is required"
            return None, None
        if not isinstance(value, str) or value not in param.options:
            return None, f"{param.key}: expected one of {', '.join(param.options)}"
        return value, None

    if isinstance(param, BooleanField):
        if not present:
            return param.default, None
        if not isinstance(value, bool):
            return None, f"{param.key}: expected a boolean"
        return value, None

    if isinstance(param, NumberField):
        if not present:
            if param.default is not None:
                return param.default, None
            if param.required:
                return None, f"{param.key}: value is required"
            return None, None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return None, f"{param.key}: expected a number"
        if param.min is not None and value < param.min:
            return None, f"{param.key}: must be >= {param.min:g}"
        if param.max is not None and value > param.max:
            return None, f"{param.key}: must be <= {param.max:g}"
        if param.step:
            offset = (value - (param.min or 0)) / param.step
            if not math.isclose(offset, round(offset), abs_tol=1e-9):
                return None, f"{param.key}: must be a multiple of {param.step:g}"
        return value, None

    if isinstance(param, StringListField):
        if not present:
            return list(param.default), None
        if isinstance(value, str):
            items = [part.strip() for part in value.split(param.separator)]
        elif isinstance(value, list) and all(isinstance(item, str) for item in value):
            items = [item.strip() for item in value]
        else:
            return None, f"{param.key}: expected a list of strings"
        items = [item for item in items if item]
        if param.max_items is not None and len(items) > param.max_items:
            return None, f"{param.key}: at most {param.max_items} items"
        return items, None

    raise TypeError(f"Unknown parameter field: {param!r}")


def validate_params(model: ModelDefinition, raw_params: dict[str, Any] | None) -> dict[str, Any]:
    raw = dict(raw_params or {})
    known = {param.key for param in model.params}
    errors = [f"{key}: unknown parameter" for key in sorted(raw) if key not in known]

    validated: dict[str, Any] = {}
    for param in model.params:
        value, error = _validate_field(param, param.key in raw, raw.get(param.key))
        if error:
            errors.append(error)
        elif value is not None:
            validated[param.key] = value

    if errors:
        raise InvalidParamsError("; ".join(errors))
    return validated


def _price_key_part(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def price_key(model: ModelDefinition, params: dict[str, Any]) -> str:
    return "|".join(_price_key_part(params.get(key)) for key in model.price_keys)


class ModelCatalog:
    """Static registry of generation models."""

    def __init__(self, models: Iterable[ModelDefinition]) -> None:
        self._models = {model.id: model for model in models}

    def get(self, model_id: str) -> ModelDefinition | None:
        return self._models.get(model_id)

    def require(self, model_id: str) -> ModelDefinition:
        model = self.get(model_id)
        if model is None:
            raise UnknownModelError()
        return model

    def list_models(self) -> list[ModelDefinition]:
        return list(self._models.values())

    def default_params(self, model: ModelDefinition) -> dict[str, Any]:
        defaults: dict[str, Any] = {}
        for param in model.params:
            value, error = _validate_field(param, False, None)
            if error is None and value is not None:
                defaults[param.key] = value
        return defaults

    def validate(
        self,
        model_id: str,
        raw_params: dict[str, Any] | None,
        inputs: Iterable[InputItem],
        prompt: str = "",
    ) -> ValidatedRequest:
        model = self.require(model_id)
        params = validate_params(model, raw_params)

        items = tuple(inputs)
        check = check_input_count(model.inputs, items)
        if not check.ok:
            raise InvalidInputsError(check.message)

        cleaned_prompt = (prompt or "").strip()
        if model.prompt_required and not cleaned_prompt:
            raise InvalidPromptError()
        return ValidatedRequest(model=model, prompt=cleaned_prompt, params=params, inputs=items)

    def price(self, model_id: str, params: dict[str, Any]) -> int:
        """Credits for one unit of output; 0 means the combination has no price."""
        model = self.get(model_id)
        if model is None:
            return 0
        return int(model.price_table.get(price_key(model, params), 0))


# --- Loading -----------------------------------------------------------------


def _build_field(model_id: str, raw: dict[str, Any]) -> ParamField:
    kind = raw.get("type")
    cls = _FIELD_KINDS.get(kind)
    if cls is None:
        raise CatalogConfigError(f"{model_id}: unknown param type {kind!r}")
    key = raw.get("key")
    if not key:
        raise CatalogConfigError(f"{model_id}: param without key")
    common = {"key": key, "label": raw.get("label", key), "help": raw.get("help")}

    if cls is SelectField:
        options = tuple(str(option) for option in raw.get("options", []))
        if not options:
            raise CatalogConfigError(f"{model_id}.{key}: select needs options")
        default = raw.get("default")
        if default is not None and default not in options:
            raise CatalogConfigError(f"{model_id}.{key}: default not in options")
        return SelectField(options=options, default=default, required=bool(raw.get("required", False)), **common)
    if cls is BooleanField:
        return BooleanField(default=bool(raw.get("default", False)), **common)
    if cls is NumberField:
        return NumberField(
            min=raw.get("min"),
            max=raw.get("max"),
            step=raw.get("step"),
            default=raw.get("default"),
            required=bool(raw.get("required", False)),
            **common,
        )
    return StringListField(
        separator=raw.get("separator", ","),
        max_items=raw.get("max_items"),
        default=tuple(raw.get("default", ())),
        **common,
    )


def _build_model(model_id: str, raw: dict[str, Any]) -> ModelDefinition:
    job_type = raw.get("type")
    if job_type not in JOB_TYPES:
        raise CatalogConfigError(f"{model_id}: type must be one of {JOB_TYPES}")

    inputs = None
    raw_inputs = raw.get("inputs")
    if raw_inputs:
        if raw_inputs.get("kind") not in INPUT_KINDS:
            raise CatalogConfigError(f"{model_id}: bad input kind")
        inputs = InputRule(
            kind=raw_inputs["kind"],
            min=int(raw_inputs.get("min", 0)),
            max=int(raw_inputs.get("max", 0)),
            max_size_mb=int(raw_inputs.get("max_size_mb", settings.max_upload_mb)),
            mime_types=tuple(raw_inputs.get("mime_types", ())),
        )
        if inputs.min < 0 or inputs.max < inputs.min:
            raise CatalogConfigError(f"{model_id}: bad input bounds")

    params = tuple(_build_field(model_id, item) for item in raw.get("params", []))
    field_keys = {param.key for param in params}
    price_keys = tuple(raw.get("price_keys", ()))
    for key in price_keys:
        if key not in field_keys:
            raise CatalogConfigError(f"{model_id}: price key {key!r} is not a param")
    for param in params:
        if param.key in price_keys and _may_be_omitted(param):
            raise CatalogConfigError(f"{model_id}: price key {param.key!r} needs a default or required = true")

    if "price" in raw:
        table = {"": raw["price"]}
        if price_keys:
            raise CatalogConfigError(f"{model_id}: flat price cannot have price_keys")
    else:
        table = dict(raw.get("pricing", {}))
    if not table:
        raise CatalogConfigError(f"{model_id}: no pricing")
    for key, value in table.items():
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise CatalogConfigError(f"{model_id}: price for {key!r} must be a positive integer")

    max_units = int(raw.get("max_units", 1))
    if max_units < 1 or max_units > settings.max_batch_units:
        raise CatalogConfigError(f"{model_id}: max_units must be within 1..{settings.max_batch_units}")

    return ModelDefinition(
        id=model_id,
        name=raw.get("name", model_id),
        type=job_type,
        description=raw.get("description", ""),
        prompt_required=bool(raw.get("prompt_required", True)),
        inputs=inputs,
        params=params,
        price_keys=price_keys,
        price_table=table,
        max_units=max_units,
    )


def _may_be_omitted(param: ParamField) -> bool:
    if isinstance(param, (SelectField, NumberField)):
        return param.default is None and not param.required
    return False


def catalog_from_mapping(data: dict[str, Any]) -> ModelCatalog:
    models = data.get("models")
    if not isinstance(models, dict) or not models:
        raise CatalogConfigError("catalog has no [models] table")
    return ModelCatalog(_build_model(model_id, raw) for model_id, raw in models.items())


def load_catalog(path: str | Path | None = None) -> ModelCatalog:
    candidate = Path(path) if path else Path(settings.catalog_file)
    with open(candidate, "rb") as fh:
        return catalog_from_mapping(tomllib.load(fh))


_catalog: ModelCatalog | None = None


def get_catalog() -> ModelCatalog:
    global _catalog
    if _catalog is None:
        _catalog = load_catalog()
    return _catalog
