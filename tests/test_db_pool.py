import threading

import pytest

from db_pool import SQLiteConnectionPool


def test_connections_are_reused(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=2)

    with pool.get_connection() as first:
        first.execute("CREATE TABLE t (x INTEGER)")
        first.commit()
    with pool.get_connection() as second:
        assert second is first
        assert second.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    pool.close_all()


def test_failed_block_rolls_back(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"))
    with pool.get_connection() as con:
        con.execute("CREATE TABLE t (x INTEGER)")
        con.commit()

    with pytest.raises(RuntimeError):
        with pool.get_connection() as con:
            con.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")

    with pool.get_connection() as con:
        assert con.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    pool.close_all()


def test_connections_cross_threads(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1)
    with pool.get_connection() as con:
        con.execute("CREATE TABLE t (x INTEGER)")
        con.commit()

    errors = []

    def worker(value):
        try:
            with pool.get_connection() as con:
                con.execute("INSERT INTO t VALUES (?)", (value,))
                con.commit()
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with pool.get_connection() as con:
        assert con.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 4
    pool.close_all()
