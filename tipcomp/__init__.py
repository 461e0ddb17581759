import os
from datetime import datetime

from flask import Flask


def create_app():
    app = Flask(__name__)

    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL is required; tipcomp reads all competition data from PostgreSQL.")

    # Fixed "today" / "now" for demos and tests; unset means the real clock.
    from .racedays import parse_day

    ref_date = os.environ.get("REFERENCE_DATE")
    if ref_date:
        app.config["REFERENCE_DATE"] = parse_day(ref_date).isoformat()
        app.logger.info("Using fixed reference date %s", app.config["REFERENCE_DATE"])
    ref_time = os.environ.get("REFERENCE_TIME")
    if ref_time:
        parsed = datetime.fromisoformat(ref_time)
        if parsed.tzinfo is None:
            raise RuntimeError(f"REFERENCE_TIME must carry a UTC offset, got {ref_time!r}")
        app.config["REFERENCE_TIME"] = parsed.isoformat()
        app.logger.info("Using fixed reference time %s", app.config["REFERENCE_TIME"])

    # Initialize connection pool early (optional; direct connect works if pool init fails)
    try:
        from . import datastore_pg as _pg
        try:
            minconn = int(os.environ.get("DB_POOL_MIN", "1"))
        except ValueError:
            minconn = 1
        try:
            maxconn = int(os.environ.get("DB_POOL_MAX", "10"))
        except ValueError:
            maxconn = 10
        _pg.init_pool(minconn=minconn, maxconn=maxconn)
    except Exception:  # pragma: no cover
        app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes
    app.register_blueprint(routes.bp)

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)
