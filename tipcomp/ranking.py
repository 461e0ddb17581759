"""Dense ranking and "load more" pagination for raceday leaderboards."""

from __future__ import annotations

import unicodedata
from typing import Dict, Iterable, List, Mapping, NamedTuple, Tuple

from .aggregation import aggregate
from .models import RankedEntity, ScoredEntity, scored_entity_from_row

# Rows shown before the first "load more" and added by each further click.
INITIAL_ROWS = 6
ROWS_PER_LOAD = 10

assert INITIAL_ROWS > 0 and ROWS_PER_LOAD > 0, "page sizes must be positive"

ORDER_TOTAL = "total"
ORDER_PARTICIPATION = "participation"

METRICS = ("points", "odds")


class Page(NamedTuple):
    visible: List[RankedEntity]
    has_more: bool
    remaining_count: int


def _fold(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def name_key(name: str, entity_id: int) -> Tuple[str, str, str, int]:
    """Accent- and case-insensitive name ordering with a total fallback on id.

    ``Émile`` sorts with the E names; exact name then id break what remains.
    """
    return (_fold(name), name.casefold(), name, entity_id)


def _check_entities(entities) -> List[ScoredEntity]:
    if entities is None or not isinstance(entities, (list, tuple)):
        raise TypeError(f"entities must be a list, got {type(entities).__name__}")
    for ent in entities:
        if not isinstance(ent, ScoredEntity):
            raise TypeError(f"expected ScoredEntity, got {type(ent).__name__}")
    return list(entities)


def rank(entities: List[ScoredEntity], mode: str = ORDER_TOTAL) -> List[RankedEntity]:
    """Sort entities by total (descending) and assign dense ranks.

    Ties share a rank and the next lower total takes its 1-indexed position,
    giving ``1, 1, 3, 4, 4, 6``.  Totals are compared exactly.

    With ``mode=ORDER_PARTICIPATION`` entities without any per-race entry sort
    after every participant, whatever the participant's total, and never
    share a rank with one.
    """
    if mode not in (ORDER_TOTAL, ORDER_PARTICIPATION):
        raise ValueError(f"unknown ranking mode {mode!r}")
    items = []
    for ent in _check_entities(entities):
        agg = aggregate(ent.per_race_values)
        items.append((ent, agg.total, agg.has_participated))

    if mode == ORDER_PARTICIPATION:
        def sort_key(item):
            ent, total, participated = item
            return (not participated, -total) + name_key(ent.display_name, ent.id)

        def compare_key(item):
            return (item[2], item[1])
    else:
        def sort_key(item):
            ent, total, _participated = item
            return (-total,) + name_key(ent.display_name, ent.id)

        def compare_key(item):
            return item[1]

    items.sort(key=sort_key)

    ranked: List[RankedEntity] = []
    prev = None
    current_rank = 0
    for idx, item in enumerate(items):
        key = compare_key(item)
        if prev is None or key != prev:
            current_rank = idx + 1
            prev = key
        ent, total, participated = item
        ranked.append(RankedEntity(entity=ent, total=total, has_participated=participated, rank=current_rank))
    return ranked


def visible_count(total: int, load_more_clicks: int = 0) -> int:
    if load_more_clicks < 0:
        raise ValueError(f"load_more_clicks must be >= 0, got {load_more_clicks}")
    return min(total, INITIAL_ROWS + load_more_clicks * ROWS_PER_LOAD)


def paginate(ranked: List[RankedEntity], loaded_count: int = INITIAL_ROWS, page_size: int = ROWS_PER_LOAD) -> Page:
    """Return the first ``loaded_count`` rows of an already ranked list.

    ``page_size`` is reported back so callers can offer the next step; the
    ranking itself is never touched.
    """
    if ranked is None or not isinstance(ranked, (list, tuple)):
        raise TypeError(f"ranked must be a list, got {type(ranked).__name__}")
    if loaded_count < 0:
        raise ValueError(f"loaded_count must be >= 0, got {loaded_count}")
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    shown = min(loaded_count, len(ranked))
    visible = list(ranked[:shown])
    return Page(visible=visible, has_more=shown < len(ranked), remaining_count=len(ranked) - shown)


def rank_rows(rows: Iterable[Mapping], metric: str = "points", mode: str = ORDER_TOTAL) -> List[RankedEntity]:
    """Rank data-store leaderboard rows by ``metric`` (``points`` or ``odds``)."""
    if metric not in METRICS:
        raise ValueError(f"unknown metric {metric!r}; expected one of {', '.join(METRICS)}")
    if rows is None or not isinstance(rows, (list, tuple)):
        raise TypeError(f"rows must be a list, got {type(rows).__name__}")
    return rank([scored_entity_from_row(r, values_field=metric) for r in rows], mode=mode)


def leaderboard_payload(ranked: List[RankedEntity], load_more_clicks: int = 0) -> Dict:
    """Serialisable leaderboard window used by the JSON API and templates."""
    page = paginate(ranked, visible_count(len(ranked), load_more_clicks))
    rows = []
    for r in page.visible:
        rows.append(
            {
                "tipster_id": r.id,
                "tipster_nickname": r.display_name,
                "tipster_slogan": r.entity.tagline,
                "total": round(r.total, 2),
                "rank": r.rank,
                "rank_label": ordinal(r.rank),
            }
        )
    return {"rows": rows, "has_more": page.has_more, "remaining_count": page.remaining_count}


def ordinal(n: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th', 22 -> '22nd'."""
    if 10 < n % 100 < 14:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_currency(value: float) -> str:
    """Format an odds return as dollars, e.g. ``$1,234.50`` or ``-$4.50``."""
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


__all__ = [
    "INITIAL_ROWS",
    "ROWS_PER_LOAD",
    "ORDER_TOTAL",
    "ORDER_PARTICIPATION",
    "METRICS",
    "Page",
    "rank",
    "rank_rows",
    "paginate",
    "visible_count",
    "leaderboard_payload",
    "name_key",
    "ordinal",
    "format_currency",
]
