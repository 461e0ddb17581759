#!/usr/bin/env python3
"""
Create the tipping competition schema in the PostgreSQL database at DATABASE_URL.

Points and odds returns are written by the database routine
finalize_racecard_day_points(racecard_day_id); it is provisioned separately
and only checked for here.
"""
import os
import sys

import psycopg2


TABLES = [
    ("tipster", """
        CREATE TABLE IF NOT EXISTS tipster (
            id SERIAL PRIMARY KEY,
            tipster_nickname VARCHAR(100) NOT NULL,
            tipster_slogan VARCHAR(200)
        )
    """),
    ("comp", """
        CREATE TABLE IF NOT EXISTS comp (
            id SERIAL PRIMARY KEY,
            comp_name VARCHAR(200) NOT NULL,
            comp_slogan VARCHAR(200),
            comp_privacy VARCHAR(30) NOT NULL DEFAULT 'public',
            comp_invitecode VARCHAR(50)
        )
    """),
    ("comp_tipster", """
        CREATE TABLE IF NOT EXISTS comp_tipster (
            id SERIAL PRIMARY KEY,
            comp INTEGER NOT NULL REFERENCES comp(id) ON DELETE CASCADE,
            tipster INTEGER NOT NULL REFERENCES tipster(id) ON DELETE CASCADE,
            UNIQUE(comp, tipster)
        )
    """),
    ("racetrack", """
        CREATE TABLE IF NOT EXISTS racetrack (
            id SERIAL PRIMARY KEY,
            track_name VARCHAR(100) NOT NULL,
            track_locref VARCHAR(20)
        )
    """),
    ("racecard_day", """
        CREATE TABLE IF NOT EXISTS racecard_day (
            id SERIAL PRIMARY KEY,
            racetrack INTEGER REFERENCES racetrack(id),
            racecard_name VARCHAR(200),
            racecard_date DATE NOT NULL,
            racecard_cutoff_utc TIMESTAMPTZ
        )
    """),
    ("racecard_race", """
        CREATE TABLE IF NOT EXISTS racecard_race (
            id SERIAL PRIMARY KEY,
            racecard_day INTEGER NOT NULL REFERENCES racecard_day(id) ON DELETE CASCADE,
            race_no INTEGER NOT NULL,
            race_notes TEXT,
            UNIQUE(racecard_day, race_no)
        )
    """),
    ("racecard_runner", """
        CREATE TABLE IF NOT EXISTS racecard_runner (
            id SERIAL PRIMARY KEY,
            racecard_race INTEGER NOT NULL REFERENCES racecard_race(id) ON DELETE CASCADE,
            runner_no INTEGER NOT NULL,
            runner_name VARCHAR(100),
            runner_barrier INTEGER,
            runner_jockey VARCHAR(100),
            runner_weight NUMERIC(5, 1),
            runner_form VARCHAR(50),
            UNIQUE(racecard_race, runner_no)
        )
    """),
    ("racecard_race_results", """
        CREATE TABLE IF NOT EXISTS racecard_race_results (
            id SERIAL PRIMARY KEY,
            racecard_race_id INTEGER NOT NULL REFERENCES racecard_race(id) ON DELETE CASCADE,
            runner_no INTEGER NOT NULL CHECK (runner_no > 0),
            position INTEGER NOT NULL CHECK (position > 0),
            wodds NUMERIC(8, 2),
            podds NUMERIC(8, 2),
            UNIQUE(racecard_race_id, runner_no)
        )
    """),
    ("comp_raceday", """
        CREATE TABLE IF NOT EXISTS comp_raceday (
            id SERIAL PRIMARY KEY,
            comp INTEGER NOT NULL REFERENCES comp(id) ON DELETE CASCADE,
            racecard_day INTEGER NOT NULL REFERENCES racecard_day(id) ON DELETE CASCADE,
            UNIQUE(comp, racecard_day)
        )
    """),
    ("tipster_tips_header", """
        CREATE TABLE IF NOT EXISTS tipster_tips_header (
            id SERIAL PRIMARY KEY,
            tipster INTEGER NOT NULL REFERENCES tipster(id) ON DELETE CASCADE,
            comp_raceday INTEGER NOT NULL REFERENCES comp_raceday(id) ON DELETE CASCADE,
            UNIQUE(tipster, comp_raceday)
        )
    """),
    ("tipster_tips_detail", """
        CREATE TABLE IF NOT EXISTS tipster_tips_detail (
            id SERIAL PRIMARY KEY,
            header INTEGER NOT NULL REFERENCES tipster_tips_header(id) ON DELETE CASCADE,
            race_no INTEGER NOT NULL,
            tip_main INTEGER NOT NULL,
            tip_alt INTEGER,
            UNIQUE(header, race_no)
        )
    """),
    ("tipster_race_score", """
        CREATE TABLE IF NOT EXISTS tipster_race_score (
            id SERIAL PRIMARY KEY,
            tipster INTEGER NOT NULL REFERENCES tipster(id) ON DELETE CASCADE,
            comp_raceday INTEGER NOT NULL REFERENCES comp_raceday(id) ON DELETE CASCADE,
            race_no INTEGER NOT NULL,
            points NUMERIC(8, 2),
            odds_return NUMERIC(10, 2),
            UNIQUE(tipster, comp_raceday, race_no)
        )
    """),
]


def create_tables(conn):
    """Create the database schema"""
    with conn.cursor() as cur:
        for _name, ddl in TABLES:
            cur.execute(ddl)
        conn.commit()
    print(f"Database schema created successfully ({len(TABLES)} tables)")


def has_points_routine(conn) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM pg_proc WHERE proname = 'finalize_racecard_day_points'")
        return cur.fetchone() is not None


def main():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    conn = psycopg2.connect(database_url)
    try:
        print("Connected to PostgreSQL database")
        create_tables(conn)
        if not has_points_routine(conn):
            print("WARNING: finalize_racecard_day_points() is missing; saving results will report a points failure")
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
