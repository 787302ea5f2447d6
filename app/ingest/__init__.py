"""Ingestion helpers."""

from __future__ import annotations

import functools
import pathlib

import yaml

MAPPINGS_PATH = pathlib.Path(__file__).with_name("field_mappings.yml")

FieldMapping = dict[str, list[str]]


@functools.lru_cache(maxsize=None)
def _load_all(path: pathlib.Path = MAPPINGS_PATH) -> dict[str, FieldMapping]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return {
        name: {field: [str(key) for key in keys] for field, keys in (table or {}).items()}
        for name, table in data.items()
    }


def load_field_mapping(name: str) -> FieldMapping:
    """Return a copy of the named canonical-field -> candidate-keys table.

    Unknown names fall back to the ``custom`` table.
    """
    tables = _load_all()
    table = tables.get(name) or tables["custom"]
    return {field: list(keys) for field, keys in table.items()}
