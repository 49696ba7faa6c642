from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, Optional


_AGENCY_PREFIX = re.compile(r"^(MTA NYCT|MTABC|MTA)[_ ]")
_SBS_SUFFIX = re.compile(r"^(?P<base>[A-Z]+\d+)\s*(?:-\s*SBS|\s+SBS|SBS|\+)$")
_DIAMOND_EXPRESS = re.compile(r"^(?P<base>[0-9A-Z])X$")

BUS_AGENCY = "MTA NYCT"


@dataclass(frozen=True)
class RouteIdentity:
    """Canonical route token plus the spellings upstream feeds use for it."""

    canonical: str
    aliases: FrozenSet[str]

    @property
    def is_select_bus(self) -> bool:
        return self.canonical.endswith("-SBS")

    @property
    def line_ref(self) -> str:
        """Route id in the form the Bus Time SIRI API expects for LineRef."""
        if self.is_select_bus:
            return f"{BUS_AGENCY}_{self.canonical[:-4]}+"
        return f"{BUS_AGENCY}_{self.canonical}"

    def matches(self, value: Optional[str]) -> bool:
        if not value or not value.strip():
            return False
        if value in self.aliases:
            return True
        return normalize_route(value).canonical == self.canonical


def _canonical_token(value: str) -> str:
    token = " ".join(value.strip().upper().split())
    token = _AGENCY_PREFIX.sub("", token)
    sbs = _SBS_SUFFIX.match(token)
    if sbs:
        return f"{sbs.group('base')}-SBS"
    express = _DIAMOND_EXPRESS.match(token)
    if express:
        return express.group("base")
    return token


@lru_cache(maxsize=256)
def normalize_route(value: str) -> RouteIdentity:
    canonical = _canonical_token(value)
    if not canonical:
        raise ValueError(f"Route identifier {value!r} is empty.")
    aliases = {canonical, canonical.replace("-", ""), f"{BUS_AGENCY}_{canonical}"}
    if canonical.endswith("-SBS"):
        base = canonical[:-4]
        aliases.update({f"{base}+", f"{base} SBS", f"{BUS_AGENCY}_{base}+"})
    elif len(canonical) == 1:
        aliases.add(f"{canonical}X")
    return RouteIdentity(canonical=canonical, aliases=frozenset(aliases))
