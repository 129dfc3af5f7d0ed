import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
from click.testing import CliRunner

import mcdrop.cli
from mcdrop.cli import StepProgress, _progress_mode, cli
from mcdrop.config import Settings
from mcdrop.control.state import LifecycleState

UP = {"state": "up", "address": "203.0.113.5", "instance_id": 42}
DOWN = {"state": "down", "address": None, "instance_id": None}


@pytest.fixture
def api(monkeypatch):
    """Route CLI HTTP calls to scripted responses.

    ``api.routes[(method, path)]`` is a (status, body) pair, a list of them
    consumed in order (the last repeats), or an exception to raise.
    """
    state = SimpleNamespace(routes={}, requests=[])

    def handler(request):
        key = (request.method, request.url.path)
        body = json.loads(request.content) if request.content else None
        state.requests.append((request.method, request.url.path, body))
        route = state.routes[key]
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        status, payload = route
        return httpx.Response(status, json=payload)

    def make_client(ctx):
        return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://test")

    monkeypatch.setattr(mcdrop.cli, "_make_client", make_client)
    monkeypatch.setattr(mcdrop.cli, "WAIT_INTERVAL", 0)
    return state


def test_cli_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_help_command():
    result = CliRunner().invoke(cli, ["help", "start"])
    assert result.exit_code == 0
    assert "--wait" in result.output


def test_help_unknown_command():
    result = CliRunner().invoke(cli, ["help", "launch"])
    assert result.exit_code == 1
    assert "Unknown command" in result.output


def test_usage_error_shows_help():
    result = CliRunner().invoke(cli, ["force-status", "sleeping"])
    assert result.exit_code == 2
    assert "Override the server status" in result.output


def test_status(api):
    api.routes[("GET", "/status")] = (200, UP)
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "up" in result.output
    assert "203.0.113.5" in result.output
    assert "42" in result.output


def test_status_api_unreachable(api):
    api.routes[("GET", "/status")] = httpx.ConnectError("Connection refused")
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 1
    assert "could not reach mcdrop API" in result.output


def test_start(api):
    api.routes[("POST", "/start")] = (202, {"state": "starting", "address": None, "instance_id": 42})
    result = CliRunner().invoke(cli, ["start"])
    assert result.exit_code == 0
    assert "Start accepted" in result.output
    assert "instance 42" in result.output


def test_start_conflict(api):
    api.routes[("POST", "/start")] = (409, {"detail": "Cannot start server when status is 'up'"})
    result = CliRunner().invoke(cli, ["start"])
    assert result.exit_code == 1
    assert "Cannot start server when status is 'up'" in result.output


def test_start_provider_error(api):
    api.routes[("POST", "/start")] = (502, {"detail": "Could not create droplet: 422"})
    result = CliRunner().invoke(cli, ["start"])
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "422" in result.output


def test_start_wait_until_up(api):
    api.routes[("POST", "/start")] = (202, {"state": "starting", "address": None, "instance_id": 42})
    api.routes[("GET", "/status")] = [
        (200, {"state": "starting", "address": None, "instance_id": 42}),
        (200, UP),
    ]
    result = CliRunner().invoke(cli, ["start", "--wait"])
    assert result.exit_code == 0
    assert "Status: starting" in result.output
    assert "Status: up" in result.output


def test_start_wait_ends_weird(api):
    api.routes[("POST", "/start")] = (202, {"state": "starting", "address": None, "instance_id": 42})
    api.routes[("GET", "/status")] = (200, {"state": "weird", "address": None, "instance_id": 42})
    result = CliRunner().invoke(cli, ["start", "--wait"])
    assert result.exit_code == 1
    assert "weird" in result.output


def test_start_wait_times_out(api):
    api.routes[("POST", "/start")] = (202, {"state": "starting", "address": None, "instance_id": 42})
    api.routes[("GET", "/status")] = (200, {"state": "starting", "address": None, "instance_id": 42})
    result = CliRunner().invoke(cli, ["start", "--wait", "--timeout", "0"])
    assert result.exit_code == 1
    assert "Still 'starting'" in result.output


def test_start_keyboard_interrupt_shows_interrupted(api):
    api.routes[("POST", "/start")] = KeyboardInterrupt()
    result = CliRunner().invoke(cli, ["start"])
    assert result.exit_code == 130
    assert "Interrupted." in result.output


def test_stop_wait(api):
    api.routes[("POST", "/stop")] = (202, {"state": "stopping", "address": "203.0.113.5", "instance_id": 42})
    api.routes[("GET", "/status")] = [
        (200, {"state": "stopping", "address": "203.0.113.5", "instance_id": 42}),
        (200, DOWN),
    ]
    result = CliRunner().invoke(cli, ["stop", "--wait"])
    assert result.exit_code == 0
    assert "Stop accepted" in result.output
    assert "Status: down" in result.output


def test_stop_conflict(api):
    api.routes[("POST", "/stop")] = (409, {"detail": "Cannot stop server when status is 'down'"})
    result = CliRunner().invoke(cli, ["stop"])
    assert result.exit_code == 1
    assert "Cannot stop server" in result.output


def test_force_status(api):
    api.routes[("POST", "/force-status")] = (200, {"state": "up", "address": None, "instance_id": 42})
    result = CliRunner().invoke(cli, ["force-status", "up"])
    assert result.exit_code == 0
    assert api.requests[0][2] == {"state": "up"}
    assert "no public address" in result.output


def test_set_instance_parses_numeric_ids(api):
    api.routes[("PUT", "/instance-id")] = (200, {"state": "down", "address": None, "instance_id": 1234})
    CliRunner().invoke(cli, ["set-instance", "1234"])
    CliRunner().invoke(cli, ["set-instance", "i-0abc"])
    assert api.requests[0][2] == {"instance_id": 1234}
    assert api.requests[1][2] == {"instance_id": "i-0abc"}


def test_console_joins_arguments(api):
    api.routes[("POST", "/console")] = (200, {"output": "There are 2 players"})
    result = CliRunner().invoke(cli, ["console", "say", "hello", "world"])
    assert result.exit_code == 0
    assert api.requests[0][2] == {"command": "say hello world"}
    assert "There are 2 players" in result.output


def test_init(api):
    api.routes[("POST", "/init")] = (202, UP)
    result = CliRunner().invoke(cli, ["init"])
    assert result.exit_code == 0
    assert "Initialization started" in result.output


def test_balance(api):
    api.routes[("GET", "/balance")] = (200, {
        "month_to_date_usage": "11.21", "month_to_date_balance": "23.44",
        "account_balance": "12.23", "generated_at": "2019-07-09T15:01:12Z",
    })
    result = CliRunner().invoke(cli, ["balance"])
    assert result.exit_code == 0
    assert "$11.21" in result.output
    assert "$12.23" in result.output


def test_api_url_from_environment(monkeypatch):
    seen = {}

    def make_client(ctx):
        seen["url"] = ctx.obj["api_url"]
        return httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=DOWN)),
            base_url="http://test",
        )

    monkeypatch.setattr(mcdrop.cli, "_make_client", make_client)
    monkeypatch.setenv("MCDROP_API_URL", "http://10.0.0.2:9000")
    CliRunner().invoke(cli, ["status"])
    assert seen["url"] == "http://10.0.0.2:9000"


# ── serve ──


@patch("uvicorn.run")
@patch("mcdrop.cli.LifecycleController")
@patch("mcdrop.cli.load_settings")
def test_serve_applies_initial_state(mock_load, mock_controller_cls, mock_run):
    mock_load.return_value = Settings(
        initial_state=LifecycleState.WEIRD, initial_instance_id=42, api_port=9000,
    )
    controller = mock_controller_cls.from_settings.return_value

    result = CliRunner().invoke(cli, ["serve"])

    assert result.exit_code == 0
    controller.set_instance_id.assert_called_once_with(42)
    controller.force_status.assert_called_once_with(LifecycleState.WEIRD)
    assert mock_run.call_args.kwargs == {"host": "127.0.0.1", "port": 9000}


@patch("uvicorn.run")
@patch("mcdrop.cli.LifecycleController")
@patch("mcdrop.cli.load_settings")
def test_serve_options_override_settings(mock_load, mock_controller_cls, mock_run):
    mock_load.return_value = Settings()
    controller = mock_controller_cls.from_settings.return_value

    result = CliRunner().invoke(cli, ["serve", "--host", "0.0.0.0", "--port", "8123"])

    assert result.exit_code == 0
    controller.set_instance_id.assert_not_called()
    controller.force_status.assert_not_called()
    assert mock_run.call_args.kwargs == {"host": "0.0.0.0", "port": 8123}


@patch("uvicorn.run")
@patch("mcdrop.cli.load_settings", side_effect=ValueError("MCDROP_POLL_INTERVAL must be a number, got 'x'"))
def test_serve_bad_configuration(mock_load, mock_run):
    result = CliRunner().invoke(cli, ["serve"])
    assert result.exit_code == 1
    assert "MCDROP_POLL_INTERVAL" in result.output
    mock_run.assert_not_called()


# ── progress display ──


@patch("mcdrop.cli.halo.Halo")
def test_step_progress_ticks_off_previous_step(mock_halo_cls):
    first, second = MagicMock(), MagicMock()
    mock_halo_cls.side_effect = [first, second]
    progress = StepProgress(mode="steps")

    progress.update("Status: starting")
    progress.update("Status: up")
    progress.finish()

    assert [c.kwargs["text"] for c in mock_halo_cls.call_args_list] == ["Status: starting", "Status: up"]
    first.succeed.assert_called_once_with()
    second.succeed.assert_called_once_with()


@patch("mcdrop.cli.halo.Halo")
def test_step_progress_fail_marks_spinner(mock_halo_cls):
    progress = StepProgress(mode="steps")
    progress.update("Status: starting")
    progress.fail("Still 'starting' after 0s")
    mock_halo_cls.return_value.fail.assert_called_once_with("Still 'starting' after 0s")


@patch("mcdrop.cli.halo.Halo")
def test_step_progress_plain_prints(mock_halo_cls, capsys):
    progress = StepProgress(mode="plain")
    progress.update("Status: stopping")
    progress.finish()
    progress.fail("Interrupted")
    assert capsys.readouterr().out == "Status: stopping\nInterrupted\n"
    mock_halo_cls.assert_not_called()


def test_progress_mode_plain_for_debug_or_non_tty(monkeypatch):
    ctx = SimpleNamespace(obj={"debug": True})
    assert _progress_mode(ctx) == "plain"

    ctx = SimpleNamespace(obj={"debug": False})
    monkeypatch.setattr(mcdrop.cli.sys, "stderr", SimpleNamespace(isatty=lambda: True))
    assert _progress_mode(ctx) == "steps"
