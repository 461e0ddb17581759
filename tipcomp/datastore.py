from typing import Any, Dict, List, Optional

# Datastore proxy.  Every call is resolved against datastore_pg at call time
# so tests can monkeypatch the PostgreSQL functions with in-memory versions.

from . import datastore_pg as _pg

AlreadyJoined = _pg.AlreadyJoined


def list_tipster_comps(tipster_id: int) -> List[Dict[str, Any]]:
    return _pg.list_tipster_comps(tipster_id)


def get_comp(comp_id: int) -> Optional[Dict[str, Any]]:
    return _pg.get_comp(comp_id)


def list_comp_tipsters(comp_id: int) -> List[Dict[str, Any]]:
    return _pg.list_comp_tipsters(comp_id)


def list_comp_racedays(comp_id: int) -> List[Dict[str, Any]]:
    return _pg.list_comp_racedays(comp_id)


def get_comp_raceday(comp_raceday_id: int) -> Optional[Dict[str, Any]]:
    return _pg.get_comp_raceday(comp_raceday_id)


def join_comp(comp_id: int, tipster_id: int) -> None:
    return _pg.join_comp(comp_id, tipster_id)


def list_races(raceday_id: int) -> List[Dict[str, Any]]:
    return _pg.list_races(raceday_id)


def list_race_results(race_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    return _pg.list_race_results(race_ids)


def list_race_runners(race_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    return _pg.list_race_runners(race_ids)


def replace_race_results(race_id: int, rows: List[Dict[str, Any]]) -> None:
    return _pg.replace_race_results(race_id, rows)


def finalize_points(raceday_id: int) -> None:
    return _pg.finalize_points(raceday_id)


def list_raceday_tips(comp_raceday_id: int) -> List[Dict[str, Any]]:
    return _pg.list_raceday_tips(comp_raceday_id)


def list_raceday_scores(comp_raceday_id: int) -> List[Dict[str, Any]]:
    return _pg.list_raceday_scores(comp_raceday_id)


def upsert_tips(comp_raceday_id: int, tipster_id: int, tips: Dict[int, Dict[str, Optional[int]]]) -> None:
    return _pg.upsert_tips(comp_raceday_id, tipster_id, tips)
