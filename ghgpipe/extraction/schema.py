"""Emissions record contract -- versioned, language-neutral.

Every extraction, reflection and human edit is normalised through
``EmissionsReport`` so that:

- every key is present in the serialised record, nested keys included
- unknown numbers and years are ``None``; unknown text is ``""``
- placeholder strings such as ``"N/A"`` never survive (they become
  ``None`` / ``""``)
- numeric strings in common report notations ("1 200", "1,200", "12,5")
  are read as numbers

All emission figures are metric tonnes CO2e.  Categories follow the GHG
Protocol scope 3 list, in order.  Bump ``SCHEMA_VERSION`` whenever a key is
added, removed or changes meaning.
"""
from __future__ import annotations

import re
from typing import Annotated, Any, get_origin

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

SCHEMA_VERSION = "2024-1"

DEFAULT_UNIT = "tCO2e"

SCOPE3_CATEGORIES: tuple[str, ...] = (
    "purchasedGoods",
    "capitalGoods",
    "fuelAndEnergyRelatedActivities",
    "upstreamTransportationAndDistribution",
    "wasteGeneratedInOperations",
    "businessTravel",
    "employeeCommuting",
    "upstreamLeasedAssets",
    "downstreamTransportationAndDistribution",
    "processingOfSoldProducts",
    "useOfSoldProducts",
    "endOfLifeTreatmentOfSoldProducts",
    "downstreamLeasedAssets",
    "franchises",
    "investments",
    "other",
)

SENTINEL_VALUES: frozenset[str] = frozenset({
    "", "-", "--", "n/a", "na", "n.a.", "none", "null", "unknown", "not available",
    "not reported", "not disclosed", "saknas", "ej tillgänglig", "ej tillgängligt",
    "okänt", "uppgift saknas",
})

_THOUSANDS_COMMA = re.compile(r"^-?\d{1,3}(,\d{3})+$")


def is_sentinel(value: object) -> bool:
    return isinstance(value, str) and value.strip().lower() in SENTINEL_VALUES


def coerce_number(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return None if value is None else value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        if is_sentinel(value):
            return None
        text = value.strip().replace("\u00a0", "").replace(" ", "")
        if "," in text and "." in text:
            text = text.replace(",", "")
        elif _THOUSANDS_COMMA.match(text):
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")
        return text
    return value


def _coerce_year(value: Any) -> Any:
    value = coerce_number(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"\d{4}(\.0+)?", value):
        return int(float(value))
    return value


def _coerce_text(value: Any) -> Any:
    if value is None or is_sentinel(value):
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value.strip() if isinstance(value, str) else value


Number = Annotated[float | None, BeforeValidator(coerce_number)]
Year = Annotated[int | None, BeforeValidator(_coerce_year)]
Text = Annotated[str, BeforeValidator(_coerce_text)]


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _nested_null_is_empty(cls, value: Any, info) -> Any:
        # A nested object or list sent as null means "nothing known", not "absent".
        field = cls.model_fields[info.field_name]
        if value is None and field.default_factory is not None:
            return field.default_factory()
        return value


class Scope1(_Contract):
    emissions: Number = None
    biogenic: Number = None
    unit: Text = DEFAULT_UNIT


class Scope2(_Contract):
    emissions: Number = None
    marketBased: Number = None
    locationBased: Number = None
    unit: Text = DEFAULT_UNIT


class Scope3Categories(_Contract):
    purchasedGoods: Number = None
    capitalGoods: Number = None
    fuelAndEnergyRelatedActivities: Number = None
    upstreamTransportationAndDistribution: Number = None
    wasteGeneratedInOperations: Number = None
    businessTravel: Number = None
    employeeCommuting: Number = None
    upstreamLeasedAssets: Number = None
    downstreamTransportationAndDistribution: Number = None
    processingOfSoldProducts: Number = None
    useOfSoldProducts: Number = None
    endOfLifeTreatmentOfSoldProducts: Number = None
    downstreamLeasedAssets: Number = None
    franchises: Number = None
    investments: Number = None
    other: Number = None


class Scope3(_Contract):
    emissions: Number = None
    unit: Text = DEFAULT_UNIT
    categories: Scope3Categories = Field(default_factory=Scope3Categories)


class Emissions(_Contract):
    reportingYear: Year = None
    scope1: Scope1 = Field(default_factory=Scope1)
    scope2: Scope2 = Field(default_factory=Scope2)
    scope3: Scope3 = Field(default_factory=Scope3)
    totalEmissions: Number = None
    totalUnit: Text = DEFAULT_UNIT


class Goal(_Contract):
    description: Text = ""
    year: Year = None
    target: Number = None
    baseYear: Year = None


class EmissionsReport(_Contract):
    companyName: Text = ""
    wikidataId: Text = ""
    industry: Text = ""
    sector: Text = ""
    industryGroup: Text = ""
    baseYear: Year = None
    url: Text = ""
    emissions: Emissions = Field(default_factory=Emissions)
    goals: list[Goal] = Field(default_factory=list)
    reliability: Text = ""
    reviewComment: Text = ""
    publicComment: Text = ""
    verified: Text = ""


TOP_LEVEL_KEYS: tuple[str, ...] = tuple(EmissionsReport.model_fields)


def json_schema() -> dict[str, Any]:
    """JSON schema handed to the model as its structured-output format."""
    return EmissionsReport.model_json_schema()


def empty_record() -> dict[str, Any]:
    return EmissionsReport().model_dump()


def complete_record(data: dict[str, Any]) -> dict[str, Any]:
    """Validate *data* and return it with every schema key present.

    Raises ``pydantic.ValidationError`` when a value cannot be read as its
    declared type.
    """
    return EmissionsReport.model_validate(data).model_dump()


def schema_paths(model: type[BaseModel] = EmissionsReport, prefix: str = "") -> list[str]:
    """Dotted paths of every field, parents before children."""
    paths: list[str] = []
    for name, field in model.model_fields.items():
        path = f"{prefix}{name}"
        paths.append(path)
        annotation = field.annotation
        if get_origin(annotation) is None and isinstance(annotation, type) and issubclass(annotation, BaseModel):
            paths.extend(schema_paths(annotation, prefix=f"{path}."))
    return paths


def get_path(data: dict[str, Any], path: str) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def apply_patch(record: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge a reviewer *patch* into *record* and re-validate.

    Only keys that exist in the contract may be patched; nested objects are
    merged, lists and scalars replaced.
    """
    known = set(schema_paths())

    def _merge(target: dict[str, Any], changes: dict[str, Any], prefix: str) -> None:
        for key, value in changes.items():
            path = f"{prefix}{key}"
            if path not in known:
                raise ValueError(f"Unknown field {path!r} in patch")
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                _merge(target[key], value, f"{path}.")
            else:
                target[key] = value

    merged = complete_record(record)
    _merge(merged, patch, "")
    return complete_record(merged)
