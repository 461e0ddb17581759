"""Per-tipster totals, sub-tip combinations and consensus counts."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple

from .models import SubTipCombination, TipRecord


class Aggregate(NamedTuple):
    total: float
    has_participated: bool


def aggregate(per_race_values: Mapping[int, float]) -> Aggregate:
    """Sum the values present in ``per_race_values``.

    Absent races contribute nothing.  ``has_participated`` only depends on
    whether the map has any entry, so a single race worth ``0`` still counts
    as participation.
    """
    if per_race_values is None:
        raise TypeError("per_race_values must be a mapping, got None")
    total = 0.0
    for value in per_race_values.values():
        total += value
    return Aggregate(total=total, has_participated=len(per_race_values) > 0)


def _check_tips(tips: Iterable[TipRecord]) -> List[TipRecord]:
    if tips is None or not isinstance(tips, (list, tuple)):
        raise TypeError(f"tips must be a list, got {type(tips).__name__}")
    return list(tips)


def ordered_combinations(tips: Iterable[TipRecord]) -> List[SubTipCombination]:
    """Return distinct (main, alt) pairs in first-seen order."""
    seen: Set[SubTipCombination] = set()
    out: List[SubTipCombination] = []
    for tip in _check_tips(tips):
        if tip.main is None or tip.alt is None:
            continue
        combo = SubTipCombination(tip.main, tip.alt)
        if combo not in seen:
            seen.add(combo)
            out.append(combo)
    return out


def extract_unique_combinations(tips: Iterable[TipRecord]) -> Set[SubTipCombination]:
    """Set of ordered (main, alt) pairs; tips without an alt are ignored."""
    return set(ordered_combinations(tips))


def extract_combinations_by_race(tips: Iterable[TipRecord]) -> Dict[int, List[SubTipCombination]]:
    by_race: Dict[int, List[TipRecord]] = {}
    for tip in _check_tips(tips):
        by_race.setdefault(tip.race_no, []).append(tip)
    out: Dict[int, List[SubTipCombination]] = {}
    for race_no, race_tips in by_race.items():
        combos = ordered_combinations(race_tips)
        if combos:
            out[race_no] = combos
    return out


def consensus_counts(tips: Iterable[TipRecord]) -> Dict[int, Dict[int, int]]:
    """Count selections per race and runner.

    A tip with a sub selection counts for the sub runner; otherwise for the
    main runner.
    """
    counts: Dict[int, Dict[int, int]] = {}
    for tip in _check_tips(tips):
        runner = tip.alt if tip.alt is not None else tip.main
        if runner is None:
            continue
        race = counts.setdefault(tip.race_no, {})
        race[runner] = race.get(runner, 0) + 1
    return counts


def runner_consensus(runners: List[Dict], counts: Optional[Mapping[int, int]]) -> Tuple[List[Dict], int]:
    """Annotate runners with ``tipster_count`` and bar width.

    Returns the runners sorted by count (descending, stable on runner order)
    and the maximum count used to scale the bars.
    """
    counts = counts or {}
    annotated = []
    for runner in runners:
        annotated.append({**runner, "tipster_count": int(counts.get(runner["runner_no"], 0))})
    max_count = max((r["tipster_count"] for r in annotated), default=0)
    for runner in annotated:
        runner["tip_percentage"] = (runner["tipster_count"] / max_count * 100) if max_count > 0 else 0
    annotated.sort(key=lambda r: -r["tipster_count"])
    return annotated, max_count


def resolve_combinations(combos: Iterable[SubTipCombination], runner_names: Mapping[int, str]) -> List[Dict]:
    out = []
    for combo in combos:
        out.append(
            {
                "main_runner_no": combo.main,
                "main_runner_name": runner_names.get(combo.main) or f"Runner {combo.main} N/A",
                "alt_runner_no": combo.alt,
                "alt_runner_name": runner_names.get(combo.alt) or f"Runner {combo.alt} N/A",
            }
        )
    return out


def _tipped_values(values: Mapping[int, float], tips: Mapping[int, object]) -> Dict[int, float]:
    if not tips:
        return {}
    out = dict(values)
    for race_no in tips:
        out.setdefault(race_no, 0.0)
    return out


def review_tables(rows: Iterable[Mapping]) -> Dict[str, List[Dict]]:
    """Build the tips, points and odds review tables for a raceday.

    Each row needs ``tipster_id``, ``tipster_nickname``, ``tips``, ``points``
    and ``odds`` (the last three keyed by race number).  Tipsters who did not
    submit tips sort after everyone who did in all three tables.
    """
    from .models import ScoredEntity, normalize_race_values
    from .ranking import ORDER_PARTICIPATION, name_key, rank

    if rows is None or not isinstance(rows, (list, tuple)):
        raise TypeError(f"review rows must be a list, got {type(rows).__name__}")

    augmented: Dict[int, Dict] = {}
    points_entities = []
    odds_entities = []
    for row in rows:
        tips = row.get("tips") or {}
        points = normalize_race_values(row.get("points"), "points")
        odds = normalize_race_values(row.get("odds"), "odds")
        has_tipped = len(tips) > 0
        tid = int(row["tipster_id"])
        name = row["tipster_nickname"]
        augmented[tid] = {
            **row,
            "tips": {int(k): v for k, v in tips.items()},
            "points": points,
            "odds": odds,
            "total_points": aggregate(points).total,
            "total_odds": aggregate(odds).total,
            "has_tipped": has_tipped,
        }
        # Participation follows submitted tips: every tipped race gets an
        # entry, scored or not.
        points_entities.append(ScoredEntity(tid, name, _tipped_values(points, augmented[tid]["tips"])))
        odds_entities.append(ScoredEntity(tid, name, _tipped_values(odds, augmented[tid]["tips"])))

    tips_table = sorted(
        augmented.values(),
        key=lambda r: (not r["has_tipped"],) + name_key(r["tipster_nickname"], r["tipster_id"]),
    )

    def _table(entities, total_field):
        out = []
        for ranked in rank(entities, mode=ORDER_PARTICIPATION):
            row = augmented[ranked.id]
            out.append({**row, "rank": ranked.rank, "table_total": row[total_field]})
        return out

    return {
        "tips": tips_table,
        "points": _table(points_entities, "total_points"),
        "odds": _table(odds_entities, "total_odds"),
    }


__all__ = [
    "Aggregate",
    "aggregate",
    "extract_unique_combinations",
    "extract_combinations_by_race",
    "ordered_combinations",
    "consensus_counts",
    "runner_consensus",
    "resolve_combinations",
    "review_tables",
]
