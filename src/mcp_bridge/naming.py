"""Property-name casing helpers shared by the schema and request builders."""

from __future__ import annotations

from typing import Iterable, List, Optional

from pydantic.alias_generators import to_camel, to_pascal, to_snake


def normalize_name(name: str, naming: str = "camel") -> str:
    if naming == "camel":
        return to_camel(name)
    return name


def name_variants(name: str) -> List[str]:
    """Spellings under which a schema property may exist on the host model."""
    variants: List[str] = []
    for candidate in (name, to_snake(name), to_camel(name), to_pascal(to_snake(name))):
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def match_name(name: str, available: Iterable[str]) -> Optional[str]:
    """Find `name` in `available`: exact first, then re-cased, then ignoring case."""
    names = list(available)
    for candidate in name_variants(name):
        if candidate in names:
            return candidate
    folded = {_fold(item): item for item in reversed(names)}
    return folded.get(_fold(name))


def _fold(name: str) -> str:
    return name.replace("_", "").lower()
