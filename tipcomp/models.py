"""Records shared by the ranking, raceday and aggregation helpers.

Rows arrive from the data store as loosely shaped dicts.  The ``*_from_row``
constructors validate them once, at the boundary, so that the computation
modules can rely on explicit types.  Records are frozen; derived values are
attached with :func:`dataclasses.replace` and never overwrite source fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class Status(str, Enum):
    TODAY = "TODAY"
    YESTERDAY = "YESTERDAY"
    UPCOMING = "UPCOMING"
    PAST = "PAST"


@dataclass(frozen=True)
class ScoredEntity:
    """A tipster with sparse per-race scores for one competition raceday."""

    id: int
    display_name: str
    per_race_values: Mapping[int, float] = field(default_factory=dict)
    tagline: Optional[str] = None


@dataclass(frozen=True)
class RankedEntity:
    entity: ScoredEntity
    total: float
    has_participated: bool
    rank: int

    @property
    def id(self) -> int:
        return self.entity.id

    @property
    def display_name(self) -> str:
        return self.entity.display_name


@dataclass(frozen=True)
class DatedEvent:
    """A competition raceday at day granularity."""

    id: int
    date_key: date
    name: Optional[str] = None
    track_name: Optional[str] = None
    track_locref: Optional[str] = None
    race_count: int = 0
    status: Optional[Status] = None


@dataclass(frozen=True)
class TipRecord:
    race_no: int
    main: int
    alt: Optional[int] = None


@dataclass(frozen=True, order=True)
class SubTipCombination:
    main: int
    alt: int


def _require_int(value: Any, label: str, positive: bool = False) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{label} must be an integer, got bool")
    if isinstance(value, int):
        out = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        out = int(value.strip())
    else:
        raise TypeError(f"{label} must be an integer, got {value!r}")
    if positive and out <= 0:
        raise ValueError(f"{label} must be positive, got {out}")
    return out


def _require_number(value: Any, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise TypeError(f"{label} must be numeric, got {value!r}")
    return float(value)


def normalize_race_values(raw: Optional[Mapping[Any, Any]], label: str = "per_race_values") -> Dict[int, float]:
    """Return ``{race_no: value}`` with positive int keys and float values.

    ``None`` means no rows at all and yields an empty map.  JSON objects
    deliver race numbers as strings, which are accepted.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise TypeError(f"{label} must be a mapping, got {type(raw).__name__}")
    out: Dict[int, float] = {}
    for key, value in raw.items():
        race_no = _require_int(key, f"{label} race number", positive=True)
        out[race_no] = _require_number(value, f"{label}[{race_no}]")
    return out


def scored_entity_from_row(row: Mapping[str, Any], values_field: str = "points") -> ScoredEntity:
    """Build a :class:`ScoredEntity` from a leaderboard/review row.

    ``values_field`` selects which per-race map (``points`` or ``odds``)
    becomes the entity's values.
    """
    if not isinstance(row, Mapping):
        raise TypeError(f"tipster row must be a mapping, got {type(row).__name__}")
    name = row.get("tipster_nickname")
    if not isinstance(name, str):
        raise ValueError(f"tipster row {row.get('tipster_id')!r} has no nickname")
    return ScoredEntity(
        id=_require_int(row.get("tipster_id"), "tipster_id"),
        display_name=name,
        per_race_values=normalize_race_values(row.get(values_field), values_field),
        tagline=row.get("tipster_slogan"),
    )


def dated_event_from_row(row: Mapping[str, Any]) -> DatedEvent:
    from .racedays import parse_day

    if not isinstance(row, Mapping):
        raise TypeError(f"raceday row must be a mapping, got {type(row).__name__}")
    return DatedEvent(
        id=_require_int(row.get("comp_raceday_id"), "comp_raceday_id"),
        date_key=parse_day(row.get("raceday_date")),
        name=row.get("raceday_name"),
        track_name=row.get("racetrack_name"),
        track_locref=row.get("racetrack_locref"),
        race_count=int(row.get("race_count") or 0),
    )


def tip_from_row(row: Mapping[str, Any]) -> TipRecord:
    if not isinstance(row, Mapping):
        raise TypeError(f"tip row must be a mapping, got {type(row).__name__}")
    alt = row.get("tip_alt")
    return TipRecord(
        race_no=_require_int(row.get("race_no"), "race_no", positive=True),
        main=_require_int(row.get("tip_main"), "tip_main", positive=True),
        alt=None if alt is None else _require_int(alt, "tip_alt", positive=True),
    )


__all__ = [
    "Status",
    "ScoredEntity",
    "RankedEntity",
    "DatedEvent",
    "TipRecord",
    "SubTipCombination",
    "normalize_race_values",
    "scored_entity_from_row",
    "dated_event_from_row",
    "tip_from_row",
]
