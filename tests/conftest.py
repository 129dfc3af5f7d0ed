from contextlib import contextmanager
from types import SimpleNamespace

import boto3
import pytest
from botocore.exceptions import ClientError

from mcdrop.config import Settings
from mcdrop.control.lifecycle import LifecycleController
from mcdrop.control.ssh import CommandResult
from mcdrop.control.state import ServerRecord
from mcdrop.providers.base import (
    ACTIVE,
    INACTIVE,
    PRIVATE,
    PUBLIC,
    AccountBalance,
    InstanceInfo,
    Network,
)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "uses_moto: test uses moto @mock_aws (allows boto3 calls)"
    )


@pytest.fixture(autouse=True)
def _block_real_aws(request, monkeypatch):
    """Prevent any test from making real AWS API calls."""
    if request.node.get_closest_marker("uses_moto"):
        return

    def _blocked_client(service, *a, **kw):
        raise RuntimeError(
            f"Unmocked boto3.client('{service}') call! "
            f"Add a @patch or fixture mock for this AWS call."
        )

    monkeypatch.setattr(boto3, "client", _blocked_client)


# ── Fakes ──


class FakeProvider:
    """Scripted instance provider.

    ``responses`` is consumed one per get_instance() call; the last entry
    repeats. Entries that are exceptions are raised.
    """

    def __init__(self, instance_id=42, responses=None):
        self.instance_id = instance_id
        self.responses = list(responses or [])
        self.create_error = None
        self.delete_error = None
        self.created = 0
        self.deleted = []
        self.get_calls = 0

    def create_instance(self):
        if self.create_error:
            raise self.create_error
        self.created += 1
        return self.instance_id

    def get_instance(self, instance_id):
        self.get_calls += 1
        response = self.responses[min(self.get_calls, len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response

    def delete_instance(self, instance_id):
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(instance_id)

    def get_balance(self):
        return AccountBalance(
            month_to_date_usage="1.50", month_to_date_balance="1.50",
            account_balance="-3.20", generated_at="2024-01-01T00:00:00Z",
        )


class FakeExecutor:
    """Records commands. ``results`` maps a command substring to a
    CommandResult or an exception; anything else succeeds with no output."""

    def __init__(self):
        self.commands = []
        self.results = {}
        self.sessions_opened = 0
        self.sessions_closed = 0

    @contextmanager
    def session(self):
        self.sessions_opened += 1
        session = object()
        try:
            yield session
        finally:
            self.sessions_closed += 1

    def exec(self, command, session=None, log_output=False):
        self.commands.append((command, session))
        for needle, outcome in self.results.items():
            if needle in command:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return CommandResult(exit_code=0, stdout="", stderr="")

    @property
    def command_lines(self):
        return [command for command, _ in self.commands]


# ── Factories ──


@pytest.fixture
def make_instance_info():
    """Factory for InstanceInfo. ``public``/``private`` add networks."""
    def _make(instance_id=42, active=True, public=None, private=None):
        networks = []
        if public:
            networks.append(Network(address=public, scope=PUBLIC))
        if private:
            networks.append(Network(address=private, scope=PRIVATE))
        return InstanceInfo(
            id=instance_id, status=ACTIVE if active else INACTIVE,
            networks=tuple(networks),
        )
    return _make


@pytest.fixture
def make_provider():
    """Factory for FakeProvider with scripted get_instance() responses."""
    def _make(responses=None, instance_id=42):
        return FakeProvider(instance_id=instance_id, responses=responses)
    return _make


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def fast_settings():
    """Settings with every delay set to zero."""
    return Settings(
        poll_interval=0, ssh_settle_delay=0, save_settle_delay=0,
        stop_settle_delay=0, poweroff_settle_delay=0,
    )


@pytest.fixture
def make_client_error():
    """Factory for botocore ClientError."""
    def _make(code: str, message: str = "error"):
        return ClientError({"Error": {"Code": code, "Message": message}}, "TestOp")
    return _make


@pytest.fixture
def make_controller(fast_settings):
    """Build a LifecycleController wired to fakes.

    Returns a SimpleNamespace with .controller, .provider, .executor,
    .messages, .errors and .sleeps (delays requested by the teardown).
    """
    def _make(record=None, responses=None, settings=None, sleep=None):
        provider = FakeProvider(responses=responses)
        executor = FakeExecutor()
        messages, errors, sleeps = [], [], []
        controller = LifecycleController(
            provider,
            settings=settings or fast_settings,
            executor=executor,
            record=record or ServerRecord(),
            on_status=messages.append,
            on_error=errors.append,
            sleep=sleep or sleeps.append,
        )
        return SimpleNamespace(
            controller=controller, provider=provider, executor=executor,
            messages=messages, errors=errors, sleeps=sleeps,
        )
    return _make
