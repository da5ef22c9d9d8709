"""Field-group YAML loader.

Loads ``field_groups.yaml`` (shipped next to this module) and returns
``FieldGroupConfig``.  The file is a data contract tied to
``SCHEMA_VERSION``: loading fails when it names a field the record does not
have, leaves part of the record unowned, or was written for another
schema version.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import yaml

from ghgpipe.extraction.schema import SCHEMA_VERSION, schema_paths

DEFAULT_PATH = Path(__file__).with_name("field_groups.yaml")

# Set from the job payload, never extracted.
UNEXTRACTED_FIELDS: frozenset[str] = frozenset({"url"})

_REQUIRED_GROUP_FIELDS: frozenset[str] = frozenset({"name", "fields", "queries"})


@dataclass(frozen=True)
class FieldGroup:
    name: str
    fields: tuple[str, ...]
    queries: tuple[str, ...]


@dataclass(frozen=True)
class FieldGroupConfig:
    schema_version: str
    groups: tuple[FieldGroup, ...] = field(default_factory=tuple)

    def get(self, name: str) -> FieldGroup:
        for group in self.groups:
            if group.name == name:
                return group
        raise KeyError(f"No field group named {name!r}")


def _children(path: str, known: list[str]) -> list[str]:
    depth = path.count(".") + 1
    return [p for p in known if p.startswith(f"{path}.") and p.count(".") == depth]


def _is_covered(path: str, owned: set[str], known: list[str]) -> bool:
    if path in owned:
        return True
    children = _children(path, known)
    return bool(children) and all(_is_covered(child, owned, known) for child in children)


def _validate(config: FieldGroupConfig, source: Path) -> None:
    if config.schema_version != SCHEMA_VERSION:
        raise ValueError(
            f"{source}: written for schema {config.schema_version!r}, "
            f"record schema is {SCHEMA_VERSION!r}"
        )

    known = schema_paths()
    owners: dict[str, str] = {}
    for group in config.groups:
        if not group.fields:
            raise ValueError(f"{source}: group {group.name!r} owns no fields")
        if not group.queries:
            raise ValueError(f"{source}: group {group.name!r} has no retrieval queries")
        for path in group.fields:
            if path not in known:
                raise ValueError(f"{source}: group {group.name!r} names unknown field {path!r}")
            for other, owner in owners.items():
                if path == other or path.startswith(f"{other}.") or other.startswith(f"{path}."):
                    raise ValueError(
                        f"{source}: field {path!r} of group {group.name!r} overlaps "
                        f"{other!r} of group {owner!r}"
                    )
            owners[path] = group.name

    owned = set(owners)
    top_level = [p for p in known if "." not in p and p not in UNEXTRACTED_FIELDS]
    missing = [p for p in top_level if not _is_covered(p, owned, known)]
    if missing:
        raise ValueError(f"{source}: fields not owned by any group: {missing}")


def load_field_groups(path: str | Path = DEFAULT_PATH) -> FieldGroupConfig:
    """Load and validate a field-group file.

    Raises
    ------
    ValueError
        If the document is malformed or does not match the record schema.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a YAML mapping, got {type(data).__name__}")
    if "schema_version" not in data or "groups" not in data:
        raise ValueError(f"{path}: missing required fields: schema_version, groups")

    groups: list[FieldGroup] = []
    seen: set[str] = set()
    for raw in data["groups"] or []:
        missing = _REQUIRED_GROUP_FIELDS - set(raw or {})
        if missing:
            raise ValueError(f"{path}: group missing required fields: {sorted(missing)}")
        if raw["name"] in seen:
            raise ValueError(f"{path}: duplicate group {raw['name']!r}")
        seen.add(raw["name"])
        groups.append(
            FieldGroup(
                name=str(raw["name"]),
                fields=tuple(str(f) for f in raw["fields"] or ()),
                queries=tuple(str(q) for q in raw["queries"] or ()),
            )
        )

    config = FieldGroupConfig(schema_version=str(data["schema_version"]), groups=tuple(groups))
    _validate(config, path)
    return config


@lru_cache(maxsize=1)
def default_field_groups() -> FieldGroupConfig:
    return load_field_groups(DEFAULT_PATH)
