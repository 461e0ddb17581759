import pytest
from psycopg2 import OperationalError


class _Cursor:
    def __init__(self, error=None):
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        if self.error is not None:
            raise self.error


class _Conn:
    autocommit = False
    status = 0

    def __init__(self, error=None):
        self.error = error
        self.closed = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return _Cursor(self.error)

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


class _Pool:
    def __init__(self, conns):
        self.conns = list(conns)
        self.calls_get = 0
        self.calls_put = []

    def getconn(self):
        self.calls_get += 1
        return self.conns.pop(0)

    def putconn(self, conn, close=False):
        self.calls_put.append((conn, close))
        if close:
            conn.close()


def test_pool_checkout_retries_on_stale_connection(monkeypatch):
    import tipcomp.datastore_pg as pg

    bad = _Conn(OperationalError("SSL connection has been closed unexpectedly"))
    good = _Conn()
    pool = _Pool([bad, good])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn() as conn:
        assert conn is good

    assert pool.calls_get == 2
    assert (bad, True) in pool.calls_put
    assert pool.calls_put[-1] == (good, False)


def test_pool_checkout_gives_up_after_one_retry(monkeypatch):
    import tipcomp.datastore_pg as pg

    pool = _Pool([_Conn(OperationalError("gone")), _Conn(OperationalError("still gone")), _Conn()])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(OperationalError):
        with pg._get_conn():
            pass
    assert pool.calls_get == 2
    assert all(close for _c, close in pool.calls_put)


def test_pool_discards_connection_on_unexpected_ping_error(monkeypatch):
    import tipcomp.datastore_pg as pg

    broken = _Conn(RuntimeError("driver bug"))
    pool = _Pool([broken])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(RuntimeError):
        with pg._get_conn():
            pass
    assert pool.calls_put == [(broken, True)]


def test_error_inside_block_rolls_back_and_returns_conn(monkeypatch):
    import tipcomp.datastore_pg as pg

    good = _Conn()
    pool = _Pool([good])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(ValueError):
        with pg._get_conn():
            raise ValueError("boom")
    # one rollback after the ping, one for the failed block
    assert good.rollbacks == 2
    assert pool.calls_put == [(good, False)]
