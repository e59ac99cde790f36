import logging

import pytest

import pg_timeout


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_when_section_missing():
    settings = pg_timeout.parse_timeout_settings({})

    assert settings.naptime == 10
    assert settings.idle_session_timeout == 60


def test_load_and_parse(tmp_path):
    path = write_config(tmp_path, "pg_timeout:\n  naptime: 5\n  idle_session_timeout: '120'\n")

    settings = pg_timeout.parse_timeout_settings(pg_timeout.load_config(path))

    assert settings == pg_timeout.timeout_settings(naptime=5, idle_session_timeout=120)


def test_empty_file_is_empty_config(tmp_path):
    assert pg_timeout.load_config(write_config(tmp_path, "")) == {}


@pytest.mark.parametrize("value", [0, -1, 2147483648])
def test_out_of_range_values_are_rejected(value):
    with pytest.raises(pg_timeout.config_error, match="outside the valid range"):
        pg_timeout.parse_timeout_settings({"pg_timeout": {"naptime": value}})


@pytest.mark.parametrize("value", [True, "ten", 1.5, [1]])
def test_non_integer_values_are_rejected(value):
    with pytest.raises(pg_timeout.config_error, match="invalid value"):
        pg_timeout.parse_timeout_settings({"pg_timeout": {"idle_session_timeout": value}})


def test_upper_bound_is_accepted():
    settings = pg_timeout.parse_timeout_settings({"pg_timeout": {"idle_session_timeout": 2147483647}})
    assert settings.idle_session_timeout == 2147483647


def test_missing_file(tmp_path):
    with pytest.raises(pg_timeout.config_error) as exc_info:
        pg_timeout.load_config(str(tmp_path / "nope.yaml"))
    assert exc_info.value.exit_code == 2


def test_yaml_syntax_error(tmp_path):
    with pytest.raises(pg_timeout.config_error, match="syntax error"):
        pg_timeout.load_config(write_config(tmp_path, "pg_timeout: [unclosed\n"))


def test_non_mapping_document(tmp_path):
    with pytest.raises(pg_timeout.config_error, match="mapping"):
        pg_timeout.load_config(write_config(tmp_path, "- a\n- b\n"))


def test_settings_loader_rereads_file(tmp_path):
    path = write_config(tmp_path, "pg_timeout:\n  naptime: 5\n")
    loader = pg_timeout.make_settings_loader(path)
    assert loader().naptime == 5

    write_config(tmp_path, "pg_timeout:\n  naptime: 7\n")
    assert loader().naptime == 7


def test_register_worker_logs_effective_values(caplog):
    caplog.set_level(logging.INFO)
    settings = pg_timeout.timeout_settings(naptime=15, idle_session_timeout=300)

    reg = pg_timeout.register_worker({}, settings)

    assert reg.name == "pg_timeout_worker"
    assert reg.type == "pg_timeout"
    assert reg.restart_time == 15
    assert reg.database_connection and reg.shmem_access
    assert reg.start_time == "recovery_finished"
    assert caplog.messages == [
        "pg_timeout_worker started with pg_timeout.naptime=15 seconds",
        "pg_timeout_worker started with pg_timeout.idle_session_timeout=300 seconds",
    ]


def test_systemd_unit_restarts_after_naptime(tmp_path):
    settings = pg_timeout.timeout_settings(naptime=12, idle_session_timeout=60)
    reg = pg_timeout.register_worker({"run": {"worker_name": "reaper_b"}}, settings)
    config_path = write_config(tmp_path, "")

    unit = pg_timeout.render_systemd_unit(reg, config_path, {"systemd_after": "postgresql@16-main.service"})

    assert "Restart=on-failure" in unit
    assert "RestartSec=12" in unit
    assert "Requires=postgresql@16-main.service" in unit
    assert f"--config {config_path}" in unit
    assert "(reaper_b)" in unit


def test_seconds_setting_accepts_fractions():
    assert pg_timeout.parse_seconds_setting({"supervisor_poll_sec": 0.5}, "supervisor_poll_sec", 1.0) == 0.5
    assert pg_timeout.parse_seconds_setting({}, "recovery_poll_sec", 5.0) == 5.0


@pytest.mark.parametrize("value", ["fast", True, 0, -2, "nan", [1]])
def test_seconds_setting_rejects_bad_values(value):
    with pytest.raises(pg_timeout.config_error, match="run.recovery_poll_sec"):
        pg_timeout.parse_seconds_setting({"recovery_poll_sec": value}, "recovery_poll_sec", 5.0)
