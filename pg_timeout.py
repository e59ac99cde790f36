# SPDX-License-Identifier: GPL-3.0-or-later
# pg_timeout.py
#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
pg_timeout v1.0: PostgreSQL idle session reaper

This daemon wakes up every naptime seconds, lists the sessions that have been
in state 'idle' for longer than idle_session_timeout seconds, logs each one,
and terminates them with pg_terminate_backend().

Key features
- Sleep/poll loop that wakes early on SIGHUP/SIGTERM/SIGINT
- Configuration reload on SIGHUP (new values apply from the next cycle)
- Exit on parent death, non-zero exit on shutdown so the supervisor restarts it
- Waits for recovery to finish before reaping (standby servers are left alone)
- Dry-run mode (log only) + optional Slack/Telegram notifications
- systemd unit generation (--systemd-unit)

Dependencies
  pip3 install "psycopg[binary]" pyyaml requests

Notes
- Only state = 'idle' is targeted, never 'idle in transaction'.
- The termination query re-evaluates the idle predicate, it does not reuse the
  pid list that was logged.
"""

import argparse
import logging
import os
import select
import signal
import socket
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg
import requests
import yaml
from psycopg.rows import dict_row


int_max = 2147483647

default_naptime = 10
default_idle_session_timeout = 60
default_worker_name = "pg_timeout_worker"
default_worker_type = "pg_timeout"

null_value = "NULL"
log_message = "%s: idle session PID=%d user=%s database=%s application=%s hostname=%s"

# SHUTTING_DOWN is terminal.
reaper_states = ("INITIALIZING", "WAITING", "POLLING", "ACTING", "SHUTTING_DOWN")

select_columns = ("pid", "usename", "datname", "application_name", "client_hostname")


class pg_timeout_error(Exception):
    """Base class for conditions that end the reaper process."""

    exit_code = 1


class config_error(pg_timeout_error):
    exit_code = 2


class malformed_result_error(pg_timeout_error):
    """A registry or controller statement did not return the expected result set."""

    def __init__(self, what: str, code: Any):
        self.what = what
        self.code = code
        super().__init__(f"{what}: error code {code}")


class interrupt_requested_error(pg_timeout_error):
    pass


class supervisor_died_error(pg_timeout_error):
    pass


@dataclass(frozen=True)
class timeout_settings:
    """Reloadable parameters, always within [1, int_max]."""
    naptime: int = default_naptime
    idle_session_timeout: int = default_idle_session_timeout


@dataclass(frozen=True)
class idle_session_record:
    """One pg_stat_activity row that qualified as idle."""
    pid: Optional[int]
    usename: Optional[str]
    datname: Optional[str]
    application_name: Optional[str]
    client_hostname: Optional[str]


@dataclass(frozen=True)
class worker_registration:
    """How the worker is declared to its supervisor."""
    name: str
    type: str
    shmem_access: bool
    database_connection: bool
    start_time: str
    restart_time: int


@dataclass(frozen=True)
class wake_result:
    latch_set: bool
    timed_out: bool
    supervisor_died: bool


# ---------------------------------------------------------------------------
# configuration
# ---------------------------------------------------------------------------


def setup_logging(level_name: str) -> None:
    """Configure root logger."""
    level_map = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}
    level = level_map.get((level_name or "info").strip().lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
    except OSError as e:
        raise config_error(f'could not open configuration file "{path}": {e}') from e
    except yaml.YAMLError as e:
        raise config_error(f'syntax error in configuration file "{path}": {e}') from e

    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise config_error(f'configuration file "{path}" must contain a mapping')
    return cfg


def parse_int_setting(section: Dict[str, Any], name: str, default: int) -> int:
    """Validate one pg_timeout.* integer parameter the way a GUC would."""
    raw = section.get(name, default)
    if raw is None:
        raw = default

    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise config_error(f'invalid value for parameter "pg_timeout.{name}": "{raw}"')
    try:
        value = int(raw)
    except ValueError:
        raise config_error(f'invalid value for parameter "pg_timeout.{name}": "{raw}"') from None

    if value < 1 or value > int_max:
        raise config_error(
            f'{value} is outside the valid range for parameter "pg_timeout.{name}" (1 .. {int_max})'
        )
    return value


def parse_seconds_setting(section: Dict[str, Any], name: str, default: float) -> float:
    """Validate a positive run.* interval given in (possibly fractional) seconds."""
    raw = section.get(name, default)
    if raw is None:
        raw = default

    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise config_error(f'invalid value for parameter "run.{name}": "{raw}"')
    try:
        value = float(raw)
    except ValueError:
        raise config_error(f'invalid value for parameter "run.{name}": "{raw}"') from None

    if not value > 0 or value == float("inf"):
        raise config_error(f'{raw} is outside the valid range for parameter "run.{name}" (> 0)')
    return value


def parse_timeout_settings(cfg: Dict[str, Any]) -> timeout_settings:
    section = cfg.get("pg_timeout", {}) or {}
    if not isinstance(section, dict):
        raise config_error('"pg_timeout" section must be a mapping')

    return timeout_settings(
        naptime=parse_int_setting(section, "naptime", default_naptime),
        idle_session_timeout=parse_int_setting(section, "idle_session_timeout", default_idle_session_timeout),
    )


def make_settings_loader(path: str) -> Callable[[], timeout_settings]:
    """Return a callable that re-reads and validates the reloadable parameters."""
    def loader() -> timeout_settings:
        return parse_timeout_settings(load_config(path))

    return loader


# ---------------------------------------------------------------------------
# registration
# ---------------------------------------------------------------------------


def register_worker(cfg: Dict[str, Any], settings: timeout_settings) -> worker_registration:
    run_cfg = cfg.get("run", {}) or {}
    name = str(run_cfg.get("worker_name", default_worker_name) or default_worker_name).strip()

    registration = worker_registration(
        name=name or default_worker_name,
        type=default_worker_type,
        shmem_access=True,
        database_connection=True,
        start_time="recovery_finished",
        restart_time=settings.naptime,
    )

    logging.info("%s started with pg_timeout.naptime=%d seconds", registration.name, settings.naptime)
    logging.info(
        "%s started with pg_timeout.idle_session_timeout=%d seconds",
        registration.name,
        settings.idle_session_timeout,
    )
    return registration


def render_systemd_unit(registration: worker_registration, config_path: str, run_cfg: Dict[str, Any]) -> str:
    """Build a systemd unit that restarts the worker restart_time seconds after it exits."""
    after = str(run_cfg.get("systemd_after", "postgresql.service") or "postgresql.service")
    config_path = os.path.abspath(config_path)

    lines = [
        "[Unit]",
        f"Description={registration.type} idle session reaper ({registration.name})",
        f"After=network.target {after}",
    ]
    if registration.database_connection:
        lines.append(f"Requires={after}")

    lines += [
        "",
        "[Service]",
        "Type=simple",
        f"ExecStart={sys.executable} -m pg_timeout --config {config_path}",
        "ExecReload=/bin/kill -HUP $MAINPID",
        "Restart=on-failure",
        f"RestartSec={registration.restart_time}",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
    ]
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# lifecycle
# ---------------------------------------------------------------------------


class supervisor_watch:
    """Detects that the process which started us has gone away (we got reparented)."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.ppid = os.getppid()

    def alive(self) -> bool:
        if not self.enabled:
            return True
        return os.getppid() == self.ppid


class lifecycle_flags:
    """
    Latches shared between signal handlers and the main loop.

    request_*() assigns a plain flag and then sets the wake latch, so a
    sleeping loop wakes up immediately. Nothing reachable from a signal
    handler takes a lock: the latch is a non-blocking socketpair that the
    loop waits on with select(). Flags are read (and reload cleared) only by
    the loop.
    """

    def __init__(self):
        self.latch_set = False
        self.reload_requested = False
        self.terminate_requested = False
        self.interrupt_requested = False
        self.wake_r, self.wake_w = socket.socketpair()
        self.wake_r.setblocking(False)
        self.wake_w.setblocking(False)

    def close(self) -> None:
        self.wake_r.close()
        self.wake_w.close()

    def set_latch(self) -> None:
        self.latch_set = True
        try:
            self.wake_w.send(b"\0")
        except (BlockingIOError, InterruptedError):
            # buffer full: the read end is already readable
            pass

    def request_reload(self) -> None:
        self.reload_requested = True
        self.set_latch()

    def request_terminate(self) -> None:
        self.terminate_requested = True
        self.set_latch()

    def request_interrupt(self) -> None:
        self.interrupt_requested = True
        self.set_latch()

    def consume_reload(self) -> bool:
        if not self.reload_requested:
            return False
        self.reload_requested = False
        return True

    def reset_latch(self) -> None:
        self.latch_set = False
        while True:
            try:
                if not self.wake_r.recv(4096):
                    break
            except (BlockingIOError, InterruptedError):
                break

    def check_for_interrupts(self) -> None:
        if self.interrupt_requested:
            raise interrupt_requested_error("canceling reaper cycle due to user request")

    def wait(
        self,
        timeout_sec: float,
        supervisor: Optional[supervisor_watch] = None,
        poll_sec: float = 1.0,
    ) -> wake_result:
        """Block until the latch is set, timeout_sec elapses, or the supervisor dies."""
        deadline = time.monotonic() + timeout_sec
        while True:
            if supervisor is not None and not supervisor.alive():
                return wake_result(latch_set=self.latch_set, timed_out=False, supervisor_died=True)

            if self.latch_set:
                return wake_result(latch_set=True, timed_out=False, supervisor_died=False)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return wake_result(latch_set=False, timed_out=True, supervisor_died=False)

            # A byte left over from a set racing with reset_latch() counts as a wakeup.
            readable, _, _ = select.select([self.wake_r], [], [], min(remaining, poll_sec))
            if readable or self.latch_set:
                return wake_result(latch_set=True, timed_out=False, supervisor_died=False)


def install_signal_handlers(lifecycle: lifecycle_flags) -> None:
    """
    Install signal handlers:
    - SIGHUP: reload configuration before the next cycle
    - SIGTERM: leave the main loop
    - SIGINT: cancel the current cycle and exit
    """
    def on_sighup(signum, frame):
        lifecycle.request_reload()

    def on_sigterm(signum, frame):
        lifecycle.request_terminate()

    def on_sigint(signum, frame):
        lifecycle.request_interrupt()

    signal.signal(signal.SIGHUP, on_sighup)
    signal.signal(signal.SIGTERM, on_sigterm)
    signal.signal(signal.SIGINT, on_sigint)


# ---------------------------------------------------------------------------
# database access
# ---------------------------------------------------------------------------


def mask_password(pw: Any) -> str:
    """Mask password strings for logs."""
    if pw is None:
        return ""
    s = str(pw)
    return "********" if s else ""


def format_conn_info(db_cfg: Dict[str, Any]) -> str:
    """Return a sanitized connection string for error logs."""
    host = db_cfg.get("host", "")
    port = db_cfg.get("port", "")
    dbname = db_cfg.get("dbname", "postgres")
    user = db_cfg.get("user", "")
    password = mask_password(db_cfg.get("password", ""))
    timeout = db_cfg.get("connect_timeout_sec", 5)
    app = db_cfg.get("application_name", default_worker_type)
    return (
        f"host={host} port={port} dbname={dbname} user={user} password={password} "
        f"connect_timeout_sec={timeout} application_name={app}"
    )


def log_connect_error(context: str, db_cfg: Dict[str, Any], exc: Exception) -> None:
    """Log connection failures with safe details and quick diagnostic hints."""
    logging.error("db_connect_failed context=%s conn=%s", context, format_conn_info(db_cfg))
    logging.error("db_connect_failed error=%s", str(exc))

    host = db_cfg.get("host", "")
    port = db_cfg.get("port", "")
    dbname = db_cfg.get("dbname", "postgres")
    user = db_cfg.get("user", "")

    logging.error(
        "db_connect_failed hints: "
        "1) server is up and accepting connections "
        "2) pg_hba.conf rule "
        "3) user/password "
        "4) user has pg_signal_backend or superuser "
        "5) TLS requirement"
    )
    logging.error(
        "db_connect_failed quick_check: "
        f'psql "host={host} port={port} dbname={dbname} user={user}"'
    )


class pg_client:
    """Context-managed psycopg connection, held by the reaper for its whole life."""

    def __init__(self, cfg: Dict[str, Any], context: str = "unknown"):
        self.cfg = cfg
        self.context = context
        self.conn = None

    def __enter__(self) -> "pg_client":
        db_cfg = self.cfg.get("db", {}) or {}
        try:
            self.conn = psycopg.connect(
                host=db_cfg.get("host"),
                port=db_cfg.get("port"),
                dbname=db_cfg.get("dbname", "postgres"),
                user=db_cfg.get("user"),
                password=db_cfg.get("password"),
                connect_timeout=db_cfg.get("connect_timeout_sec", 5),
                application_name=db_cfg.get("application_name", default_worker_type),
                row_factory=dict_row,
            )
            # Each cycle opens its own transaction block explicitly.
            self.conn.autocommit = True
            return self
        except Exception as e:
            log_connect_error(self.context, db_cfg, e)
            raise

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.conn:
                self.conn.close()
        finally:
            self.conn = None

    def transaction(self):
        return self.conn.transaction()

    def fetch_result_set(
        self, sql: str, params: Optional[Tuple[Any, ...]] = None
    ) -> Tuple[Optional[str], Optional[List[Dict[str, Any]]]]:
        """Run sql and return (status, rows); rows is None when no result set came back."""
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            if cur.description is None:
                return cur.statusmessage, None
            return cur.statusmessage, cur.fetchall()

    def fetchone(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> Optional[Dict[str, Any]]:
        _, rows = self.fetch_result_set(sql, params)
        return rows[0] if rows else None


def idle_predicate(idle_session_timeout: int) -> str:
    # Background workers report a null state, so no backend_type filter is needed.
    return (
        "pid <> pg_backend_pid() "
        "and state = 'idle' "
        f"and state_change < current_timestamp - interval '{int(idle_session_timeout)}' second"
    )


def build_select_sql(idle_session_timeout: int) -> str:
    return (
        f"select {', '.join(select_columns)} "
        "from pg_stat_activity "
        f"where {idle_predicate(idle_session_timeout)};"
    )


def build_terminate_sql(idle_session_timeout: int) -> str:
    return (
        "select pg_terminate_backend(pid) as terminated "
        "from pg_stat_activity "
        f"where {idle_predicate(idle_session_timeout)};"
    )


def check_select_result(
    what: str,
    status: Optional[str],
    rows: Optional[List[Dict[str, Any]]],
    columns: Tuple[str, ...],
) -> List[Dict[str, Any]]:
    """Return rows if they are a well-formed SELECT result, else raise malformed_result_error."""
    if rows is None or not str(status or "").upper().startswith("SELECT"):
        raise malformed_result_error(what, status)

    for r in rows:
        if not isinstance(r, dict) or any(c not in r for c in columns):
            raise malformed_result_error(what, status)
    return rows


class session_registry:
    """Read side: a live, queryable view of the server's sessions."""

    def transaction(self):
        raise NotImplementedError

    def list_idle_sessions(self, idle_session_timeout: int) -> List[idle_session_record]:
        raise NotImplementedError

    def is_in_recovery(self) -> bool:
        return False


class session_controller:
    """Write side: terminates sessions."""

    def terminate_idle_sessions(self, idle_session_timeout: int) -> int:
        raise NotImplementedError


class pg_session_store(session_registry, session_controller):
    """pg_stat_activity / pg_terminate_backend() over a single pg_client."""

    def __init__(self, pg: pg_client):
        self.pg = pg

    def transaction(self):
        return self.pg.transaction()

    def is_in_recovery(self) -> bool:
        row = self.pg.fetchone("select pg_is_in_recovery() as in_recovery;")
        if not row:
            return False
        return bool(row["in_recovery"])

    def list_idle_sessions(self, idle_session_timeout: int) -> List[idle_session_record]:
        status, rows = self.pg.fetch_result_set(build_select_sql(idle_session_timeout))
        rows = check_select_result("cannot select from pg_stat_activity", status, rows, select_columns)

        return [
            idle_session_record(
                pid=r["pid"],
                usename=r["usename"],
                datname=r["datname"],
                application_name=r["application_name"],
                client_hostname=r["client_hostname"],
            )
            for r in rows
        ]

    def terminate_idle_sessions(self, idle_session_timeout: int) -> int:
        status, rows = self.pg.fetch_result_set(build_terminate_sql(idle_session_timeout))
        rows = check_select_result("cannot select pg_terminate_backend", status, rows, ("terminated",))
        return sum(1 for r in rows if r["terminated"])


def exit_for_supervisor_death(name: str, exit_now: Optional[Callable[[int], Any]] = None) -> None:
    """Leave immediately without unwinding: no connection close, no finally blocks."""
    err = supervisor_died_error(f"terminating {name} due to unexpected supervisor exit")
    logging.error("%s", err)
    (exit_now or os._exit)(err.exit_code)
    # only reached when exit_now returns
    raise err


def wait_for_recovery_finished(
    registry: session_registry,
    lifecycle: lifecycle_flags,
    supervisor: Optional[supervisor_watch],
    recovery_poll_sec: float,
    supervisor_poll_sec: float = 1.0,
    exit_now: Optional[Callable[[int], Any]] = None,
) -> bool:
    """Block while the server is a standby. Returns False if asked to stop first."""
    announced = False
    while registry.is_in_recovery():
        if not announced:
            logging.info("server is in recovery, waiting for it to finish before reaping")
            announced = True

        wake = lifecycle.wait(recovery_poll_sec, supervisor, supervisor_poll_sec)
        lifecycle.reset_latch()

        if wake.supervisor_died:
            exit_for_supervisor_death(default_worker_type, exit_now)
        lifecycle.check_for_interrupts()
        if lifecycle.terminate_requested:
            return False

    if announced:
        logging.info("recovery finished")
    return True


# ---------------------------------------------------------------------------
# notifications
# ---------------------------------------------------------------------------


def slack_notify(webhook_url: str, text: str) -> None:
    """Send a Slack message via incoming webhook."""
    if not webhook_url:
        return
    try:
        requests.post(webhook_url, json={"text": text}, timeout=5)
    except Exception as e:
        logging.warning("slack_notify failed: %s", e)


def telegram_notify(bot_token: str, chat_id: str, text: str) -> None:
    """Send a Telegram message via bot API."""
    if not bot_token or not chat_id:
        return
    try:
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        requests.post(url, data={"chat_id": chat_id, "text": text}, timeout=5)
    except Exception as e:
        logging.warning("telegram_notify failed: %s", e)


def make_notifier(notify_cfg: Dict[str, Any]) -> Optional[Callable[[str], None]]:
    """Return a text sink for termination summaries, or None when notifications are off."""
    if not bool(notify_cfg.get("on_terminate", False)):
        return None

    def notify(text: str) -> None:
        slack_notify(notify_cfg.get("slack_webhook_url", ""), text)
        telegram_notify(notify_cfg.get("telegram_bot_token", ""), notify_cfg.get("telegram_chat_id", ""), text)

    return notify


def build_notify_text(
    name: str,
    idle_session_timeout: int,
    sessions: List[idle_session_record],
    terminated: int,
    max_sessions: int = 20,
) -> str:
    lines: List[str] = []
    lines.append(f"[pg_timeout] {name}: terminated={terminated} found={len(sessions)} idle_session_timeout={idle_session_timeout}s")

    shown = [s for s in sessions if s.pid is not None][:max_sessions]
    for s in shown:
        lines.append(
            f"PID={s.pid} user={field_or_null(s.usename)} database={field_or_null(s.datname)} "
            f"application={field_or_null(s.application_name)} hostname={field_or_null(s.client_hostname)}"
        )

    remaining = len([s for s in sessions if s.pid is not None]) - len(shown)
    if remaining > 0:
        lines.append(f"... and {remaining} more")

    text = "\n".join(lines).strip()
    return f"```\n{text}\n```"


# ---------------------------------------------------------------------------
# reaper
# ---------------------------------------------------------------------------


def field_or_null(value: Any) -> str:
    if value is None:
        return null_value
    return str(value)


class idle_session_reaper:
    """
    Sleep / select idle sessions / log / terminate, until told to stop.

    The registry and controller are usually the same pg_session_store. The
    idle_session_timeout is captured once per cycle so both statements of a
    cycle use the same threshold even if a reload lands in between.
    """

    def __init__(
        self,
        registry: session_registry,
        controller: session_controller,
        lifecycle: lifecycle_flags,
        settings: timeout_settings,
        name: str = default_worker_name,
        settings_loader: Optional[Callable[[], timeout_settings]] = None,
        supervisor: Optional[supervisor_watch] = None,
        supervisor_poll_sec: float = 1.0,
        dry_run: bool = False,
        notifier: Optional[Callable[[str], None]] = None,
        exit_now: Optional[Callable[[int], Any]] = None,
    ):
        self.registry = registry
        self.controller = controller
        self.lifecycle = lifecycle
        self.settings = settings
        self.name = name
        self.settings_loader = settings_loader
        self.supervisor = supervisor
        self.supervisor_poll_sec = supervisor_poll_sec
        self.dry_run = dry_run
        self.notifier = notifier
        self.exit_now = exit_now

        self.state = "INITIALIZING"
        self.cycles = 0

    def initialized(self) -> None:
        self.state = "WAITING"
        logging.info("%s initialized", self.name)

    def run(self) -> int:
        """Loop until SIGTERM; returns the exit code (always non-zero, restart-me)."""
        while not self.lifecycle.terminate_requested:
            self.state = "WAITING"
            wake = self.lifecycle.wait(self.settings.naptime, self.supervisor, self.supervisor_poll_sec)
            self.lifecycle.reset_latch()

            if wake.supervisor_died:
                self.state = "SHUTTING_DOWN"
                exit_for_supervisor_death(self.name, self.exit_now)

            self.lifecycle.check_for_interrupts()

            if self.lifecycle.terminate_requested:
                break

            self.run_cycle()

        self.state = "SHUTTING_DOWN"
        logging.info("%s: shutting down", self.name)
        return 1

    def reload_settings(self) -> None:
        if self.settings_loader is None:
            return
        try:
            new_settings = self.settings_loader()
        except config_error as e:
            logging.error("%s: configuration file contains errors; changes were not applied: %s", self.name, e)
            return

        if new_settings != self.settings:
            logging.info(
                "%s: reloaded pg_timeout.naptime=%d pg_timeout.idle_session_timeout=%d",
                self.name,
                new_settings.naptime,
                new_settings.idle_session_timeout,
            )
        self.settings = new_settings

    def run_cycle(self) -> int:
        """One select/log/terminate pass. Returns the number of rows selected."""
        self.state = "POLLING"

        if self.lifecycle.consume_reload():
            logging.info("%s: received SIGHUP, reloading configuration", self.name)
            self.reload_settings()

        idle_session_timeout = self.settings.idle_session_timeout
        terminated = 0

        with self.registry.transaction():
            sessions = self.registry.list_idle_sessions(idle_session_timeout)

            for s in sessions:
                if s.pid is None:
                    logging.warning("%s: pid is NULL", self.name)
                    continue
                logging.info(
                    log_message,
                    self.name,
                    s.pid,
                    field_or_null(s.usename),
                    field_or_null(s.datname),
                    field_or_null(s.application_name),
                    field_or_null(s.client_hostname),
                )

            if len(sessions) > 0:
                self.state = "ACTING"
                terminated = self.terminate(idle_session_timeout, sessions)

        self.cycles += 1
        logging.debug(
            "%s: activity cycle=%d found=%d terminated=%d state=idle",
            self.name,
            self.cycles,
            len(sessions),
            terminated,
        )
        self.state = "WAITING"
        return len(sessions)

    def terminate(self, idle_session_timeout: int, sessions: List[idle_session_record]) -> int:
        if self.dry_run:
            logging.info(
                "[DRY-RUN] %s: idle session(s) since %d seconds not terminated",
                self.name,
                idle_session_timeout,
            )
            return 0

        terminated = self.controller.terminate_idle_sessions(idle_session_timeout)
        logging.info("%s: idle session(s) since %d seconds terminated", self.name, idle_session_timeout)

        if self.notifier is not None:
            self.notifier(build_notify_text(self.name, idle_session_timeout, sessions, terminated))
        return terminated


# ---------------------------------------------------------------------------
# entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="PostgreSQL idle session reaper")
    ap.add_argument("--config", required=True, help="config.yaml path")
    ap.add_argument("--dry-run", action="store_true", help="log idle sessions but do not terminate them")
    ap.add_argument("--systemd-unit", action="store_true", help="print a systemd unit for this worker and exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
        settings = parse_timeout_settings(cfg)
        run_cfg = cfg.get("run", {}) or {}
        supervisor_poll_sec = parse_seconds_setting(run_cfg, "supervisor_poll_sec", 1.0)
        recovery_poll_sec = parse_seconds_setting(run_cfg, "recovery_poll_sec", 5.0)
    except config_error as e:
        setup_logging("info")
        logging.error("%s", e)
        return e.exit_code

    notify_cfg = cfg.get("notify", {}) or {}

    setup_logging(str(run_cfg.get("log_level", "info")))
    registration = register_worker(cfg, settings)

    if args.systemd_unit:
        print(render_systemd_unit(registration, args.config, run_cfg), end="")
        return 0

    lifecycle = lifecycle_flags()
    install_signal_handlers(lifecycle)

    supervisor = supervisor_watch(enabled=bool(run_cfg.get("exit_on_parent_death", True)))
    dry_run = args.dry_run or bool(run_cfg.get("dry_run", False))

    # Supervisor death leaves through os._exit() inside the loop, before any of
    # the cleanup below can run.
    try:
        with pg_client(cfg, context=registration.name) as pg:
            store = pg_session_store(pg)

            if not wait_for_recovery_finished(store, lifecycle, supervisor, recovery_poll_sec, supervisor_poll_sec):
                logging.info("%s: shutting down", registration.name)
                return 1

            reaper = idle_session_reaper(
                registry=store,
                controller=store,
                lifecycle=lifecycle,
                settings=settings,
                name=registration.name,
                settings_loader=make_settings_loader(args.config),
                supervisor=supervisor,
                supervisor_poll_sec=supervisor_poll_sec,
                dry_run=dry_run,
                notifier=make_notifier(notify_cfg),
            )
            reaper.initialized()
            return reaper.run()

    except pg_timeout_error as e:
        logging.critical("%s", e)
        return e.exit_code
    except psycopg.Error as e:
        logging.exception("%s: database error: %s", registration.name, e)
        return 1
    finally:
        lifecycle.close()


if __name__ == "__main__":
    sys.exit(main())
