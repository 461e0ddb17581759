from flask import Blueprint, abort, current_app, make_response, redirect, render_template, request, url_for
from datetime import date, datetime, timezone
import os
import time

from .aggregation import (
    consensus_counts,
    extract_combinations_by_race,
    resolve_combinations,
    review_tables,
    runner_consensus,
)
from .models import dated_event_from_row, tip_from_row
from .racedays import (
    filter_and_sort_past,
    filter_window,
    live_badge_active,
    next_to_jump_index,
    parse_day,
)
from .ranking import (
    METRICS,
    format_currency,
    leaderboard_payload,
    ordinal,
    rank_rows,
)
from .datastore import (
    AlreadyJoined,
    finalize_points as ds_finalize_points,
    get_comp as ds_get_comp,
    get_comp_raceday as ds_get_comp_raceday,
    join_comp as ds_join_comp,
    list_comp_racedays as ds_list_comp_racedays,
    list_comp_tipsters as ds_list_comp_tipsters,
    list_race_results as ds_list_race_results,
    list_race_runners as ds_list_race_runners,
    list_raceday_scores as ds_list_raceday_scores,
    list_raceday_tips as ds_list_raceday_tips,
    list_races as ds_list_races,
    list_tipster_comps as ds_list_tipster_comps,
    replace_race_results as ds_replace_race_results,
    upsert_tips as ds_upsert_tips,
)


bp = Blueprint('main', __name__)

HIDDEN_PRIVACY = {'global_private', 'hidden'}

# Simple in-process caches for data-store reads.  Classification and ranking
# are always recomputed from the cached rows.
_LAYOUT_CACHE: dict[int, tuple[float, dict]] = {}
_SCORES_CACHE: dict[int, tuple[float, list[dict]]] = {}
_LAYOUT_TTL = int(os.environ.get('CACHE_TTL_LAYOUT', '180'))  # seconds
_SCORES_TTL = int(os.environ.get('CACHE_TTL_LEADERBOARD', '15'))  # seconds


def _cache_get(cache: dict, key: int):
    entry = cache.get(key)
    if not entry:
        return None
    exp, value = entry
    if exp < time.time():
        cache.pop(key, None)
        return None
    return value


def _cache_clear_all() -> None:
    _LAYOUT_CACHE.clear()
    _SCORES_CACHE.clear()


def _load_layout(comp_id: int) -> dict | None:
    """Competition, tipsters and raceday rows for a competition page."""
    cached = _cache_get(_LAYOUT_CACHE, comp_id)
    if cached is not None:
        return cached
    comp = ds_get_comp(comp_id)
    if not comp:
        return None
    layout = {
        'comp': comp,
        'tipsters': ds_list_comp_tipsters(comp_id),
        'racedays': ds_list_comp_racedays(comp_id),
    }
    _LAYOUT_CACHE[comp_id] = (time.time() + _LAYOUT_TTL, layout)
    return layout


def _load_scores(comp_raceday_id: int) -> list[dict]:
    cached = _cache_get(_SCORES_CACHE, comp_raceday_id)
    if cached is not None:
        return cached
    rows = ds_list_raceday_scores(comp_raceday_id)
    _SCORES_CACHE[comp_raceday_id] = (time.time() + _SCORES_TTL, rows)
    return rows


def _reference_date() -> date:
    """The day every status on this request is computed against."""
    configured = current_app.config.get('REFERENCE_DATE')
    if configured:
        return parse_day(configured)
    return date.today()


def _reference_time() -> datetime:
    configured = current_app.config.get('REFERENCE_TIME')
    if configured:
        return datetime.fromisoformat(configured)
    return datetime.now(timezone.utc)


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        abort(400)


def _api_error(message: str, status: int = 400):
    current_app.logger.warning("rejected_input path=%s status=%d error=%s", request.path, status, message)
    return {'error': message}, status


def _cached_response(body, max_age: int):
    resp = make_response(body)
    resp.headers['Cache-Control'] = f'max-age={max_age}, private'
    return resp


def _visible_comps(comps: list[dict]) -> list[dict]:
    return [
        c for c in comps
        if (c.get('comp_privacy') or '').strip().lower() not in HIDDEN_PRIVACY
    ]


def _raceday_for_comp(comp_id: int, comp_raceday_id: int) -> dict | None:
    header = ds_get_comp_raceday(comp_raceday_id)
    if not header or int(header.get('comp_id')) != int(comp_id):
        return None
    return header


def _split_racedays(rows: list[dict], today: date) -> tuple[list, list]:
    events = [dated_event_from_row(r) for r in rows]
    return filter_window(events, today), filter_and_sort_past(events, today)


def _ranked_leaderboard(comp_raceday_id: int, metric: str):
    rows = _load_scores(comp_raceday_id)
    ranked = rank_rows(rows, metric=metric)
    current_app.logger.info(
        "leaderboard_computed raceday=%s tipsters=%d metric=%s", comp_raceday_id, len(ranked), metric
    )
    return ranked


def _day_is_locked(header: dict, now: datetime) -> bool:
    cutoff = header.get('cutoff_utc')
    if not cutoff:
        return False
    return now > datetime.fromisoformat(cutoff)


@bp.app_template_filter('ordinal')
def _ordinal_filter(n):
    return ordinal(int(n))


@bp.app_template_filter('currency')
def _currency_filter(value):
    return format_currency(float(value))


@bp.app_template_filter('points')
def _points_filter(value):
    """Whole points render without a trailing ``.0``."""
    value = round(float(value), 2)
    return int(value) if value.is_integer() else value


@bp.app_template_filter('day')
def _day_filter(value):
    """Render a calendar day as e.g. ``25 Oct 2025``."""
    d = parse_day(value)
    return f"{d.day} {d.strftime('%b')} {d.year}"


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {'connected': False, 'status': 'no_database_url'}
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
        return {
            'connected': True,
            'status': 'ok',
            'user': user,
            'database': db,
            'server_version': (ver or '').split('\n')[0],
        }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {'connected': False, 'status': 'error', 'error': str(e)}


@bp.route('/')
def index():
    return redirect(url_for('main.comps'))


#<getdata>
@bp.route('/comps')
def comps():
    tipster_id = _int_arg('tipster_id')
    competitions = _visible_comps(ds_list_tipster_comps(tipster_id)) if tipster_id is not None else []
    breadcrumbs = [('Competitions', None)]
    return render_template(
        'comps.html',
        title='Competitions',
        breadcrumbs=breadcrumbs,
        competitions=competitions,
        tipster_id=tipster_id,
    )
#</getdata>


#<getdata>
@bp.route('/comps/<int:comp_id>')
def comp_detail(comp_id):
    today = _reference_date()
    layout = _load_layout(comp_id)
    if layout is None:
        abort(404)
    live, past = _split_racedays(layout['racedays'], today)
    comp_name = layout['comp'].get('comp_name')
    breadcrumbs = [('Competitions', url_for('main.comps')), (comp_name, None)]
    body = render_template(
        'comp.html',
        title=comp_name,
        breadcrumbs=breadcrumbs,
        comp=layout['comp'],
        tipsters=layout['tipsters'],
        live_racedays=live,
        live_active=live_badge_active(live),
        past_racedays=past,
    )
    return _cached_response(body, 180)
#</getdata>


#<getdata>
@bp.route('/comps/<int:comp_id>/<int:comp_raceday_id>')
def raceday_detail(comp_id, comp_raceday_id):
    header = _raceday_for_comp(comp_id, comp_raceday_id)
    if header is None:
        abort(404)
    tipster_id = _int_arg('tipster_id')
    points_more = _int_arg('points_more', 0)
    odds_more = _int_arg('odds_more', 0)
    if points_more < 0 or odds_more < 0:
        abort(400)

    races = ds_list_races(header['raceday_id'])
    race_ids = [r['race_id'] for r in races]
    results = ds_list_race_results(race_ids)
    runners = ds_list_race_runners(race_ids)
    for race in races:
        race['results'] = results.get(race['race_id'], [])

    tip_rows = ds_list_raceday_tips(comp_raceday_id)
    tips = [tip_from_row(t) for t in tip_rows]
    next_idx = next_to_jump_index(races)
    next_race = None
    if next_idx != -1:
        race = races[next_idx]
        race_runners = runners.get(race['race_id'], [])
        counted, max_count = runner_consensus(race_runners, consensus_counts(tips).get(race['race_no']))
        names = {r['runner_no']: r['runner_name'] for r in race_runners}
        combos = extract_combinations_by_race(tips).get(race['race_no'], [])
        next_race = {
            **race,
            'runners': counted,
            'max_count': max_count,
            'sub_tips': resolve_combinations(combos, names),
        }

    my_tips = []
    if tipster_id is not None:
        names_by_race = {
            r['race_no']: {x['runner_no']: x['runner_name'] for x in runners.get(r['race_id'], [])}
            for r in races
        }
        mine = [tip_from_row(t) for t in tip_rows if t.get('tipster_id') == tipster_id]
        for tip in sorted(mine, key=lambda t: t.race_no):
            names = names_by_race.get(tip.race_no, {})
            my_tips.append({
                'race_no': tip.race_no,
                'main': tip.main,
                'main_name': names.get(tip.main, 'Name N/A'),
                'alt': tip.alt,
                'alt_name': names.get(tip.alt, 'Name N/A') if tip.alt is not None else None,
            })

    points = leaderboard_payload(_ranked_leaderboard(comp_raceday_id, 'points'), points_more)
    odds = leaderboard_payload(_ranked_leaderboard(comp_raceday_id, 'odds'), odds_more)

    breadcrumbs = [
        ('Competitions', url_for('main.comps')),
        ('Competition', url_for('main.comp_detail', comp_id=comp_id)),
        (header.get('raceday_name'), None),
    ]
    return render_template(
        'raceday.html',
        title=header.get('raceday_name'),
        breadcrumbs=breadcrumbs,
        comp_id=comp_id,
        header=header,
        races=races,
        next_to_jump_index=next_idx,
        next_race=next_race,
        my_tips=my_tips,
        tipster_id=tipster_id,
        points=points,
        odds=odds,
        points_more=points_more,
        odds_more=odds_more,
    )
#</getdata>


#<getdata>
@bp.route('/comps/<int:comp_id>/<int:comp_raceday_id>/review')
def raceday_review(comp_id, comp_raceday_id):
    header = _raceday_for_comp(comp_id, comp_raceday_id)
    if header is None:
        abort(404)
    race_numbers = sorted(r['race_no'] for r in ds_list_races(header['raceday_id']))
    tables = review_tables(_load_scores(comp_raceday_id))
    breadcrumbs = [
        ('Competition', url_for('main.comp_detail', comp_id=comp_id)),
        (header.get('raceday_name'), url_for('main.raceday_detail', comp_id=comp_id, comp_raceday_id=comp_raceday_id)),
        ('Review', None),
    ]
    body = render_template(
        'review.html',
        title=f"Review - {header.get('raceday_name')}",
        breadcrumbs=breadcrumbs,
        header=header,
        race_numbers=race_numbers,
        tips_table=tables['tips'],
        points_table=tables['points'],
        odds_table=tables['odds'],
    )
    return _cached_response(body, 15)
#</getdata>


def _racecard(races: list[dict]) -> list[dict]:
    """Races with their runners and current placings, in race-number order."""
    race_ids = [r['race_id'] for r in races]
    runners = ds_list_race_runners(race_ids)
    results = ds_list_race_results(race_ids)
    return [
        {
            **race,
            'runners': runners.get(race['race_id'], []),
            'results': results.get(race['race_id'], []),
        }
        for race in races
    ]


#<getdata>
@bp.route('/comps/<int:comp_id>/<int:comp_raceday_id>/edit-tips')
def edit_tips(comp_id, comp_raceday_id):
    header = _raceday_for_comp(comp_id, comp_raceday_id)
    if header is None:
        abort(404)
    tipster_id = _int_arg('tipster_id')
    if tipster_id is None:
        abort(400)
    races = _racecard(ds_list_races(header['raceday_id']))
    existing = {
        tip.race_no: {'main': tip.main, 'alt': tip.alt}
        for tip in (tip_from_row(t) for t in ds_list_raceday_tips(comp_raceday_id) if t.get('tipster_id') == tipster_id)
    }
    breadcrumbs = [
        ('Competition', url_for('main.comp_detail', comp_id=comp_id)),
        (header.get('raceday_name'), url_for('main.raceday_detail', comp_id=comp_id, comp_raceday_id=comp_raceday_id, tipster_id=tipster_id)),
        ('My tips', None),
    ]
    return render_template(
        'edit_tips.html',
        title=f"Tips - {header.get('raceday_name')}",
        breadcrumbs=breadcrumbs,
        comp_id=comp_id,
        header=header,
        races=races,
        existing=existing,
        tipster_id=tipster_id,
        is_locked=_day_is_locked(header, _reference_time()),
    )
#</getdata>


#<getdata>
@bp.route('/admin/results/<int:racecard_day_id>')
def admin_results(racecard_day_id):
    """Results entry page: every race of the day with runners and placings."""
    races = ds_list_races(racecard_day_id)
    if not races:
        abort(404)
    breadcrumbs = [('Admin', None), ('Results', None)]
    return render_template(
        'admin_results.html',
        title='Race results',
        breadcrumbs=breadcrumbs,
        racecard_day_id=racecard_day_id,
        races=[{**r, 'placed': {x['runner_no']: x for x in r['results']}} for r in _racecard(races)],
    )
#</getdata>


#<getdata>
@bp.route('/api/comps/<int:comp_id>/racedays')
def api_racedays(comp_id):
    today = _reference_date()
    layout = _load_layout(comp_id)
    if layout is None:
        return _api_error('Comp not found.', 404)

    def _out(ev):
        return {
            'comp_raceday_id': ev.id,
            'raceday_date': ev.date_key.isoformat(),
            'raceday_name': ev.name,
            'racetrack_name': ev.track_name,
            'racetrack_locref': ev.track_locref,
            'race_count': ev.race_count,
            'status': ev.status.value,
        }

    live, past = _split_racedays(layout['racedays'], today)
    return {
        'reference_date': today.isoformat(),
        'live_active': live_badge_active(live),
        'live': [_out(ev) for ev in live],
        'past': [_out(ev) for ev in past],
    }
#</getdata>


#<getdata>
@bp.route('/api/comps/<int:comp_id>/<int:comp_raceday_id>/leaderboard')
def api_leaderboard(comp_id, comp_raceday_id):
    metric = (request.args.get('metric') or 'points').lower()
    if metric not in METRICS:
        return _api_error(f"Unknown metric {metric!r}; expected one of {', '.join(METRICS)}.")
    try:
        more = int(request.args.get('more', '0'))
    except ValueError:
        return _api_error('more must be an integer.')
    if more < 0:
        return _api_error('more must not be negative.')
    if _raceday_for_comp(comp_id, comp_raceday_id) is None:
        return _api_error('Raceday not found.', 404)
    payload = leaderboard_payload(_ranked_leaderboard(comp_raceday_id, metric), more)
    payload['metric'] = metric
    return payload
#</getdata>


@bp.route('/api/join-comp', methods=['POST'])
def api_join_comp():
    """Join a competition with its invite code."""
    payload = request.get_json(silent=True) or {}
    comp_id = str(payload.get('comp_id') or '').strip()
    invite_code = str(payload.get('invite_code') or '').strip()
    if not comp_id or not invite_code:
        return _api_error('CompID and code are required.')
    try:
        comp_id_int = int(comp_id)
        tipster_id = int(payload.get('tipster_id'))
    except (TypeError, ValueError):
        return _api_error('comp_id and tipster_id must be integers.')

    comp = ds_get_comp(comp_id_int)
    if not comp:
        return _api_error('Comp not found.', 404)
    stored = (comp.get('comp_invitecode') or '').strip().upper()
    if stored == '' or stored != invite_code.upper():
        return _api_error('Invalid Invite Code.')
    try:
        ds_join_comp(comp_id_int, tipster_id)
    except AlreadyJoined:
        return _api_error('You are already in this comp.')
    _cache_clear_all()
    current_app.logger.info("comp_joined comp=%d tipster=%d", comp_id_int, tipster_id)
    return {'success': True}


def _parse_tips(raw, valid_races: set[int]) -> dict[int, dict]:
    """Normalise ``{race_no: {main, alt}}``; races without a main tip are dropped."""
    if not isinstance(raw, dict):
        raise ValueError('tips must be an object keyed by race number')
    tips: dict[int, dict] = {}
    for key, value in raw.items():
        race_no = int(key)
        if race_no not in valid_races:
            raise ValueError(f'Race {race_no} is not on this raceday')
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ValueError(f'Race {race_no} tip must be an object')
        main = value.get('main')
        # 0 and blank both mean "no tip" for this race
        if not main:
            continue
        row = tip_from_row({'race_no': race_no, 'tip_main': main, 'tip_alt': value.get('alt') or None})
        tips[race_no] = {'main': row.main, 'alt': row.alt}
    return tips


#<getdata>
@bp.route('/api/comps/<int:comp_id>/<int:comp_raceday_id>/tips', methods=['POST'])
def api_save_tips(comp_id, comp_raceday_id):
    payload = request.get_json(silent=True) or {}
    header = _raceday_for_comp(comp_id, comp_raceday_id)
    if header is None:
        return _api_error('Raceday not found.', 404)
    if _day_is_locked(header, _reference_time()):
        return _api_error('Tips are locked.', 403)
    try:
        tipster_id = int(payload.get('tipster_id'))
        valid_races = {r['race_no'] for r in ds_list_races(header['raceday_id'])}
        tips = _parse_tips(payload.get('tips'), valid_races)
    except (TypeError, ValueError) as exc:
        return _api_error(str(exc))
    ds_upsert_tips(comp_raceday_id, tipster_id, tips)
    _SCORES_CACHE.pop(comp_raceday_id, None)
    current_app.logger.info("tips_saved raceday=%d tipster=%d races=%d", comp_raceday_id, tipster_id, len(tips))
    return {
        'status': 'ok',
        'redirect': url_for('main.raceday_detail', comp_id=comp_id, comp_raceday_id=comp_raceday_id),
    }
#</getdata>


def _optional_odds(value, label: str) -> float | None:
    """Numeric odds, or None when blank or zero (no dividend paid)."""
    if value is None or value == '':
        return None
    try:
        odds = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{label} must be numeric, got {value!r}')
    return odds or None


def _parse_results(raw) -> list[dict]:
    """Keep rows with a runner and a position; order by position."""
    if not isinstance(raw, list):
        raise ValueError('results must be a list')
    rows = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f'result rows must be objects, got {item!r}')
        runner_no = int(item.get('runner_no') or 0)
        position = int(item.get('position') or 0)
        if runner_no <= 0 or position <= 0:
            continue
        rows.append({
            'runner_no': runner_no,
            'position': position,
            'wodds': _optional_odds(item.get('wodds'), 'wodds'),
            'podds': _optional_odds(item.get('podds'), 'podds'),
        })
    rows.sort(key=lambda r: r['position'])
    return rows


#<getdata>
@bp.route('/api/admin/results/<int:racecard_day_id>', methods=['POST'])
def api_save_results(racecard_day_id):
    """Replace one race's placings and re-run points for the whole day."""
    payload = request.get_json(silent=True) or {}
    try:
        race_id = int(payload.get('race_id'))
        rows = _parse_results(payload.get('results'))
    except (TypeError, ValueError) as exc:
        return _api_error(str(exc))
    race = next((r for r in ds_list_races(racecard_day_id) if r['race_id'] == race_id), None)
    if race is None:
        return _api_error('Race not found on this raceday.', 404)

    ds_replace_race_results(race_id, rows)
    current_app.logger.info("results_saved race=%d rows=%d", race_id, len(rows))
    try:
        ds_finalize_points(racecard_day_id)
    except Exception as exc:
        current_app.logger.exception("points finalisation failed for raceday %d", racecard_day_id)
        return {'error': f'Results saved, but points failed: {exc}'}, 500
    finally:
        _cache_clear_all()
    return {'success': True, 'message': f"Race {race['race_no']} saved & points recalculated!"}
#</getdata>
