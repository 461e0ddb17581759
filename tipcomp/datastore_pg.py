import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values


_POOL: Optional[pg_pool.AbstractConnectionPool] = None


class AlreadyJoined(Exception):
    """The tipster is already a member of the competition."""


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        val = _env_int(env_name)
        if val is not None:
            kwargs[key] = val
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


@contextmanager
def _get_conn():
    """Yield a pooled connection when a pool exists, else a direct one.

    Pooled connections are pinged with ``SELECT 1``; a broken one is discarded
    and checkout is retried once before giving up.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is None:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                _rollback_quietly(conn)
                raise
        finally:
            conn.close()
        return

    retried = False
    while True:
        conn = _POOL.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            if not getattr(conn, "autocommit", False):
                conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            _POOL.putconn(conn, close=True)
            if retried:
                raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
            retried = True
            continue
        except Exception:
            _POOL.putconn(conn, close=True)
            raise
        break

    try:
        try:
            yield conn
        except Exception:
            _rollback_quietly(conn)
            raise
    finally:
        # status 1 = active, 2 = intrans, 3 = inerror
        if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
            if getattr(conn, "status", 0) in (1, 2, 3):
                _rollback_quietly(conn)
        _POOL.putconn(conn)


def _date_to_str(val) -> Optional[str]:
    if val is None:
        return None
    return val.isoformat() if hasattr(val, "isoformat") else str(val)


def _num(val) -> Optional[float]:
    return None if val is None else float(val)


# --- Competitions -----------------------------------------------------------

def list_tipster_comps(tipster_id: int) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT c.id AS comp_id, c.comp_name, c.comp_slogan, c.comp_privacy
            FROM comp_tipster ct JOIN comp c ON c.id = ct.comp
            WHERE ct.tipster = %s
            ORDER BY c.comp_name, c.id
            """,
            (tipster_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def get_comp(comp_id: int) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id AS comp_id, comp_name, comp_slogan, comp_privacy, comp_invitecode FROM comp WHERE id = %s",
            (comp_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_comp_tipsters(comp_id: int) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT t.id AS tipster_id, t.tipster_nickname, t.tipster_slogan
            FROM comp_tipster ct JOIN tipster t ON t.id = ct.tipster
            WHERE ct.comp = %s
            ORDER BY t.tipster_nickname, t.id
            """,
            (comp_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def list_comp_racedays(comp_id: int) -> List[Dict[str, Any]]:
    """Racedays of a competition with track details and race counts."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT cr.id AS comp_raceday_id,
                   d.id AS raceday_id,
                   d.racecard_name AS raceday_name,
                   d.racecard_date AS raceday_date,
                   t.track_name AS racetrack_name,
                   t.track_locref AS racetrack_locref,
                   COUNT(r.id) AS race_count
            FROM comp_raceday cr
            JOIN racecard_day d ON d.id = cr.racecard_day
            LEFT JOIN racetrack t ON t.id = d.racetrack
            LEFT JOIN racecard_race r ON r.racecard_day = d.id
            WHERE cr.comp = %s
            GROUP BY cr.id, d.id, d.racecard_name, d.racecard_date, t.track_name, t.track_locref
            ORDER BY d.racecard_date, cr.id
            """,
            (comp_id,),
        )
        out = []
        for r in cur.fetchall():
            out.append({**r, "raceday_date": _date_to_str(r["raceday_date"]), "race_count": int(r["race_count"] or 0)})
        return out


def get_comp_raceday(comp_raceday_id: int) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT cr.id AS comp_raceday_id,
                   cr.comp AS comp_id,
                   d.id AS raceday_id,
                   d.racecard_name AS raceday_name,
                   d.racecard_date AS raceday_date,
                   d.racecard_cutoff_utc AS cutoff_utc,
                   t.track_name AS racetrack_name,
                   t.track_locref AS racetrack_locref
            FROM comp_raceday cr
            JOIN racecard_day d ON d.id = cr.racecard_day
            LEFT JOIN racetrack t ON t.id = d.racetrack
            WHERE cr.id = %s
            """,
            (comp_raceday_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        out = dict(row)
        out["raceday_date"] = _date_to_str(out["raceday_date"])
        out["cutoff_utc"] = _date_to_str(out["cutoff_utc"])
        return out


def join_comp(comp_id: int, tipster_id: int) -> None:
    """Add a tipster to a competition; raises AlreadyJoined on duplicates."""
    try:
        with _get_conn() as conn, conn.cursor() as cur:
            cur.execute("INSERT INTO comp_tipster (comp, tipster) VALUES (%s, %s)", (comp_id, tipster_id))
            conn.commit()
    except pg_errors.UniqueViolation as exc:
        raise AlreadyJoined(f"tipster {tipster_id} already in comp {comp_id}") from exc


# --- Racecard ---------------------------------------------------------------

def list_races(raceday_id: int) -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id AS race_id, race_no, race_notes FROM racecard_race WHERE racecard_day = %s ORDER BY race_no",
            (raceday_id,),
        )
        return [
            {"race_id": r["race_id"], "race_no": int(r["race_no"]), "race_notes": r.get("race_notes") or ""}
            for r in cur.fetchall()
        ]


def list_race_results(race_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    """Placed runners per race id, ordered by finishing position."""
    out: Dict[int, List[Dict[str, Any]]] = {rid: [] for rid in race_ids}
    if not race_ids:
        return out
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT res.racecard_race_id AS race_id, res.runner_no, res.position, res.wodds, res.podds,
                   run.runner_name
            FROM racecard_race_results res
            LEFT JOIN racecard_runner run
              ON run.racecard_race = res.racecard_race_id AND run.runner_no = res.runner_no
            WHERE res.racecard_race_id = ANY(%s)
            ORDER BY res.racecard_race_id, res.position
            """,
            (list(race_ids),),
        )
        for r in cur.fetchall():
            out.setdefault(r["race_id"], []).append(
                {
                    "runner_no": int(r["runner_no"]),
                    "position": int(r["position"]),
                    "wodds": _num(r.get("wodds")),
                    "podds": _num(r.get("podds")),
                    "runner_name": r.get("runner_name") or "Name N/A",
                }
            )
    return out


def list_race_runners(race_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {rid: [] for rid in race_ids}
    if not race_ids:
        return out
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT racecard_race AS race_id, runner_no, runner_name, runner_barrier,
                   runner_jockey, runner_weight, runner_form
            FROM racecard_runner
            WHERE racecard_race = ANY(%s)
            ORDER BY racecard_race, runner_no
            """,
            (list(race_ids),),
        )
        for r in cur.fetchall():
            out.setdefault(r["race_id"], []).append(
                {
                    "runner_no": int(r["runner_no"]),
                    "runner_name": r.get("runner_name") or "Name N/A",
                    "runner_barrier": r.get("runner_barrier"),
                    "runner_jockey": r.get("runner_jockey"),
                    "runner_weight": None if r.get("runner_weight") is None else str(r["runner_weight"]),
                    "runner_form": r.get("runner_form"),
                }
            )
    return out


def replace_race_results(race_id: int, rows: List[Dict[str, Any]]) -> None:
    """Replace the placed runners of a single race."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM racecard_race_results WHERE racecard_race_id = %s", (race_id,))
        values = [(race_id, r["runner_no"], r["position"], r.get("wodds"), r.get("podds")) for r in rows]
        if values:
            execute_values(
                cur,
                "INSERT INTO racecard_race_results (racecard_race_id, runner_no, position, wodds, podds) VALUES %s",
                values,
            )
        conn.commit()


def finalize_points(raceday_id: int) -> None:
    """Run the database routine that scores every tip of the raceday."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT finalize_racecard_day_points(%s)", (raceday_id,))
        conn.commit()


# --- Tips and scores ---------------------------------------------------------

def list_raceday_tips(comp_raceday_id: int) -> List[Dict[str, Any]]:
    """Every tip submitted for a competition raceday."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT h.tipster AS tipster_id, d.race_no, d.tip_main, d.tip_alt
            FROM tipster_tips_header h
            JOIN tipster_tips_detail d ON d.header = h.id
            WHERE h.comp_raceday = %s
            ORDER BY h.tipster, d.race_no
            """,
            (comp_raceday_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def list_raceday_scores(comp_raceday_id: int) -> List[Dict[str, Any]]:
    """Per-race points/odds and tips for every tipster of the competition.

    Tipsters without any tips or scores are still returned, with empty maps.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT t.id AS tipster_id, t.tipster_nickname, t.tipster_slogan
            FROM comp_raceday cr
            JOIN comp_tipster ct ON ct.comp = cr.comp
            JOIN tipster t ON t.id = ct.tipster
            WHERE cr.id = %s
            ORDER BY t.id
            """,
            (comp_raceday_id,),
        )
        rows: Dict[int, Dict[str, Any]] = {}
        for r in cur.fetchall():
            rows[r["tipster_id"]] = {**r, "tips": {}, "points": {}, "odds": {}}

        cur.execute(
            """
            SELECT tipster AS tipster_id, race_no, points, odds_return
            FROM tipster_race_score
            WHERE comp_raceday = %s
            """,
            (comp_raceday_id,),
        )
        for s in cur.fetchall():
            row = rows.get(s["tipster_id"])
            if row is None:
                continue
            race_no = int(s["race_no"])
            if s.get("points") is not None:
                row["points"][race_no] = float(s["points"])
            if s.get("odds_return") is not None:
                row["odds"][race_no] = float(s["odds_return"])

    for tip in list_raceday_tips(comp_raceday_id):
        row = rows.get(tip["tipster_id"])
        if row is not None:
            row["tips"][int(tip["race_no"])] = {"main": tip["tip_main"], "alt": tip["tip_alt"]}
    return list(rows.values())


def upsert_tips(comp_raceday_id: int, tipster_id: int, tips: Dict[int, Dict[str, Optional[int]]]) -> None:
    """Replace a tipster's tips for a raceday with ``{race_no: {main, alt}}``."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO tipster_tips_header (tipster, comp_raceday) VALUES (%s, %s)
            ON CONFLICT (tipster, comp_raceday) DO UPDATE SET tipster = EXCLUDED.tipster
            RETURNING id
            """,
            (tipster_id, comp_raceday_id),
        )
        header_id = cur.fetchone()[0]
        cur.execute("DELETE FROM tipster_tips_detail WHERE header = %s", (header_id,))
        values = [(header_id, race_no, t["main"], t.get("alt")) for race_no, t in sorted(tips.items())]
        if values:
            execute_values(
                cur,
                "INSERT INTO tipster_tips_detail (header, race_no, tip_main, tip_alt) VALUES %s",
                values,
            )
        conn.commit()
