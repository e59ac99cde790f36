from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import pytest

import pg_timeout


@dataclass
class fake_session:
    pid: Optional[int]
    state: str
    idle_sec: int
    usename: Optional[str] = "app"
    datname: Optional[str] = "appdb"
    application_name: Optional[str] = "psql"
    client_hostname: Optional[str] = "client1"


class fake_store(pg_timeout.session_registry, pg_timeout.session_controller):
    """In-memory pg_stat_activity that honors the same idle predicate as the SQL."""

    def __init__(self, sessions=None, self_pid=1, in_recovery=0):
        self.sessions = list(sessions or [])
        self.self_pid = self_pid
        self.in_recovery = in_recovery
        self.select_calls = []
        self.terminate_calls = []
        self.transactions = 0
        self.open_transaction = False
        self.on_select = None
        self.on_terminate = None

    @contextmanager
    def transaction(self):
        self.transactions += 1
        self.open_transaction = True
        try:
            yield
        finally:
            self.open_transaction = False

    def is_in_recovery(self):
        if self.in_recovery > 0:
            self.in_recovery -= 1
            return True
        return False

    def matches(self, s, idle_session_timeout):
        return s.pid != self.self_pid and s.state == "idle" and s.idle_sec > idle_session_timeout

    def list_idle_sessions(self, idle_session_timeout):
        assert self.open_transaction
        self.select_calls.append(idle_session_timeout)
        if self.on_select is not None:
            self.on_select()
        return [
            pg_timeout.idle_session_record(
                pid=s.pid,
                usename=s.usename,
                datname=s.datname,
                application_name=s.application_name,
                client_hostname=s.client_hostname,
            )
            for s in self.sessions
            if self.matches(s, idle_session_timeout)
        ]

    def terminate_idle_sessions(self, idle_session_timeout):
        assert self.open_transaction
        self.terminate_calls.append(idle_session_timeout)
        if self.on_terminate is not None:
            self.on_terminate()
        victims = [s for s in self.sessions if s.pid is not None and self.matches(s, idle_session_timeout)]
        self.sessions = [s for s in self.sessions if s not in victims]
        return len(victims)


class fake_pg:
    """Stands in for pg_client: replays (status, rows) results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def fetch_result_set(self, sql, params=None):
        self.statements.append(sql)
        return self.results.pop(0)

    def fetchone(self, sql, params=None):
        _, rows = self.fetch_result_set(sql, params)
        return rows[0] if rows else None


class fake_supervisor:
    def __init__(self, alive=True):
        self.is_alive = alive

    def alive(self):
        return self.is_alive


@pytest.fixture
def lifecycle():
    flags = pg_timeout.lifecycle_flags()
    yield flags
    flags.close()


@pytest.fixture
def make_reaper(lifecycle):
    def _make(store, settings=None, **kwargs):
        return pg_timeout.idle_session_reaper(
            registry=store,
            controller=store,
            lifecycle=lifecycle,
            settings=settings or pg_timeout.timeout_settings(naptime=10, idle_session_timeout=30),
            **kwargs,
        )

    return _make
