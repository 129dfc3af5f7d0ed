import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable

from mcdrop.config import Settings
from mcdrop.control.console import ConsoleBridge
from mcdrop.control.poller import ReadinessPoller, RetryPolicy
from mcdrop.control.ssh import CommandResult, RemoteExecutor
from mcdrop.control.state import LifecycleState, ServerRecord, StatusSnapshot
from mcdrop.providers.base import AccountBalance, InstanceProvider, ProviderError, get_provider

MOUNT_POINT = "/mnt/discord_mcserver"

# Minecraft flushes the world to disk on "save-all"; it has no bare "save" command
SAVE_COMMAND = "save-all"
STOP_SERVICE_COMMAND = "systemctl stop minecraft"
POWEROFF_COMMAND = "poweroff"


@dataclass(frozen=True)
class InitCommand:
    command: str
    tolerate_failure: bool = False


# Turns a fresh instance into a game server. Storage, packages, firewall,
# services; order matters.
INIT_SCRIPT = (
    InitCommand(f"mkdir -p {MOUNT_POINT}"),
    InitCommand(f"mount /dev/sda {MOUNT_POINT}"),
    InitCommand("apt install openjdk-11-jre-headless python3-numpy python3-dev python3-pil nginx -y"),
    InitCommand("ufw allow 25565/tcp"),
    InitCommand("ufw allow 25565/udp"),
    InitCommand("ufw allow 80/tcp"),
    InitCommand(f"{MOUNT_POINT}/dynamic_dns.sh", tolerate_failure=True),
    InitCommand(f"useradd --home-dir {MOUNT_POINT}/minecraft --uid=10001 minecraft"),
    InitCommand(f"cp {MOUNT_POINT}/minecraft.service /etc/systemd/system/minecraft.service"),
    InitCommand(f"cp {MOUNT_POINT}/nginx_default /etc/nginx/sites-enabled/default"),
    InitCommand("systemctl daemon-reload"),
    InitCommand("systemctl enable --now minecraft.service"),
    InitCommand("systemctl enable --now nginx.service"),
    InitCommand("systemctl reload nginx.service"),
)


class RemoteCommandError(RuntimeError):
    def __init__(self, command: str, result: CommandResult):
        self.command = command
        self.result = result
        detail = (result.stderr or result.stdout).strip()
        message = f"Command exited with {result.exit_code}: {command}"
        if detail:
            message += f"\n{detail}"
        super().__init__(message)


class InitializationError(RemoteCommandError):
    pass


@dataclass(frozen=True)
class TeardownStep:
    name: str
    action: Callable[[], object]
    tolerate_failure: bool = True


class LifecycleController:
    """Owns the ServerRecord and drives the start and stop workflows.

    Each workflow checks its precondition and moves to a transitional state
    under ``_lock`` before doing any I/O, so a second caller always sees
    ``starting``/``stopping`` and backs off. The lock is never held across
    provider calls, remote commands or delays.
    """

    def __init__(self, provider: InstanceProvider, settings: Settings | None = None,
                 executor: RemoteExecutor | None = None, record: ServerRecord | None = None,
                 on_status=None, on_error=None, debug=False, on_debug=None,
                 sleep=time.sleep, init_script=INIT_SCRIPT):
        self.provider = provider
        self.settings = settings or Settings()
        self.record = record or ServerRecord()
        self.on_status = on_status
        self.on_error = on_error
        self.debug = debug
        self.on_debug = on_debug
        self.init_script = init_script
        self._sleep = sleep
        self.executor = executor or RemoteExecutor(
            lambda: self.record.address,
            key_path=self.settings.ssh_key_path,
            username=self.settings.ssh_username,
            on_output=self._notify,
            on_debug=self._debug_callback,
        )
        self.console = ConsoleBridge(
            self.executor, relay_path=self.settings.console_relay,
            password=self.settings.console_password,
        )
        self._lock = threading.Lock()
        self._poller: ReadinessPoller | None = None
        self._ready: Future | None = None
        self._initializing = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "LifecycleController":
        return cls(get_provider(settings), settings=settings, **kwargs)

    def _notify(self, message: str) -> None:
        if self.on_status:
            self.on_status(message)

    def _warn(self, message: str) -> None:
        self._notify(f"Warning: {message}")

    def _error(self, message: str) -> None:
        if self.on_error:
            self.on_error(message)
        else:
            self._notify(f"Error: {message}")

    def _debug_callback(self, message: str) -> None:
        if self.debug and self.on_debug:
            self.on_debug(message)

    def _make_poller(self) -> ReadinessPoller:
        s = self.settings
        return ReadinessPoller(
            self.provider,
            policy=RetryPolicy(
                interval=s.poll_interval, max_attempts=s.poll_max_attempts,
                deadline=s.poll_deadline,
            ),
            settle_delay=s.ssh_settle_delay,
            on_status=self._notify,
            on_debug=self._debug_callback,
        )

    # -- queries --

    def get_status(self) -> StatusSnapshot:
        with self._lock:
            return self.record.snapshot()

    def get_balance(self) -> AccountBalance:
        return self.provider.get_balance()

    # -- start workflow --

    def start(self, on_ready: Callable[[], None] | None = None) -> Future | None:
        """Request a new instance and return once the provider accepted it.

        Returns None without side effects unless the server is down. The
        returned future resolves with the ``up`` snapshot, fails when the
        instance ends ``weird``, and is cancelled by force_status().
        """
        with self._lock:
            if self.record.state is not LifecycleState.DOWN:
                self._warn(f"Refusing to start server when status is '{self.record.state.value}'")
                return None
            if self._initializing:
                self._warn("Refusing to start server while initialization is running")
                return None
            self.record.state = LifecycleState.STARTING
            self.record.on_ready = on_ready
            ready = Future()
            self._ready = ready

        self._notify("Requesting new instance")
        try:
            instance_id = self.provider.create_instance()
        except Exception as e:
            with self._lock:
                self.record.state = LifecycleState.DOWN
                self.record.clear_instance()
                self.record.on_ready = None
                self._ready = None
            self._error(f"Error while creating instance: {e}")
            raise

        poller = self._make_poller()
        with self._lock:
            self.record.instance_id = instance_id
            if self.record.state is not LifecycleState.STARTING or self._ready is not ready:
                self._warn(f"Status changed while creating instance {instance_id}; not waiting for it")
                return ready
            self._poller = poller
        self._notify(f"Created instance {instance_id}. Waiting for network...")
        poller.start(
            instance_id,
            on_ready=lambda address: self._on_reachable(poller, address),
            on_failure=lambda exc: self._on_unreachable(poller, instance_id, exc),
        )
        return ready

    def _on_reachable(self, poller: ReadinessPoller, address: str) -> None:
        with self._lock:
            if poller is not self._poller or self.record.state is not LifecycleState.STARTING:
                self._debug_callback(f"Ignoring stale readiness result for {address}")
                return
            self._poller = None
            self.record.address = address
        self._initialize()

    def _on_unreachable(self, poller: ReadinessPoller, instance_id, exc: Exception) -> None:
        with self._lock:
            if poller is not self._poller or self.record.state is not LifecycleState.STARTING:
                return
            self._poller = None
            self.record.state = LifecycleState.WEIRD
            ready, self._ready = self._ready, None
        self._error(f"Instance {instance_id} never became reachable: {exc}")
        if ready and not ready.done():
            ready.set_exception(exc)

    # -- initialization --

    def _run_init_script(self) -> None:
        with self.executor.session() as session:
            for step in self.init_script:
                result = self.executor.exec(step.command, session=session, log_output=True)
                if result.ok:
                    continue
                if step.tolerate_failure:
                    self._warn(f"Ignoring exit code {result.exit_code} from: {step.command}")
                    continue
                raise InitializationError(step.command, result)

    def _initialize(self) -> bool:
        self._notify("Initializing instance with SSH...")
        try:
            self._run_init_script()
        except Exception as e:
            self._error(f"Could not run initialization script: {e}")
            return self._finish_initialization(e)
        self._notify("Instance initialized!")
        return self._finish_initialization(None)

    def _finish_initialization(self, error: Exception | None) -> bool:
        with self._lock:
            state = self.record.state
            if state not in (LifecycleState.STARTING, LifecycleState.UP, LifecycleState.WEIRD):
                self._warn(f"Leaving status '{state.value}' unchanged after initialization")
                return error is None
            ready, self._ready = self._ready, None
            callback = None
            if error is None:
                self.record.state = LifecycleState.UP
                callback, self.record.on_ready = self.record.on_ready, None
            else:
                self.record.state = LifecycleState.WEIRD
            snapshot = self.record.snapshot()

        if callback:
            try:
                callback()
            except Exception as e:
                self._error(f"Ready callback raised: {e}")
        if ready and not ready.done():
            if error is None:
                ready.set_result(snapshot)
            else:
                ready.set_exception(error)
        return error is None

    def run_initialization(self) -> bool:
        """Re-run the initialization script against the current address.

        Meant for recovering a ``weird`` server by hand. Returns True when
        every command succeeded. Refused while a start or stop is in flight
        or another initialization is running.
        """
        with self._lock:
            state = self.record.state
            if state in (LifecycleState.STARTING, LifecycleState.STOPPING):
                self._warn(f"Refusing to initialize server when status is '{state.value}'")
                return False
            if self._initializing:
                self._warn("Refusing to initialize: initialization already running")
                return False
            if not self.record.address:
                self._warn("Refusing to initialize: no instance address known")
                return False
            self._initializing = True
        try:
            return self._initialize()
        finally:
            with self._lock:
                self._initializing = False

    # -- stop workflow --

    def _remote(self, command: str) -> CommandResult:
        result = self.executor.exec(command, log_output=True)
        if not result.ok:
            raise RemoteCommandError(command, result)
        return result

    def teardown_steps(self, instance_id) -> list[TeardownStep]:
        s = self.settings
        return [
            TeardownStep("save world", lambda: self.console.send(SAVE_COMMAND)),
            TeardownStep("wait for save", lambda: self._sleep(s.save_settle_delay)),
            TeardownStep("stop game server", lambda: self._remote(STOP_SERVICE_COMMAND)),
            TeardownStep("wait for game server", lambda: self._sleep(s.stop_settle_delay)),
            TeardownStep("power off", lambda: self._remote(POWEROFF_COMMAND)),
            TeardownStep("wait for power off", lambda: self._sleep(s.poweroff_settle_delay)),
            TeardownStep(
                "delete instance", lambda: self.provider.delete_instance(instance_id),
                tolerate_failure=False,
            ),
        ]

    def stop(self) -> Future | None:
        """Tear the instance down on a worker thread.

        Returns None without side effects unless the server is up or weird.
        The future resolves with the ``down`` snapshot, or fails with the
        deletion error, in which case the server stays ``stopping``.
        """
        with self._lock:
            if self.record.state not in (LifecycleState.UP, LifecycleState.WEIRD):
                self._warn(f"Refusing to stop server when status is '{self.record.state.value}'")
                return None
            if self._initializing:
                self._warn("Refusing to stop server while initialization is running")
                return None
            self.record.state = LifecycleState.STOPPING
            instance_id = self.record.instance_id

        done = Future()
        threading.Thread(
            target=self._teardown, args=(instance_id, done),
            name="mcdrop-teardown", daemon=True,
        ).start()
        return done

    def _teardown(self, instance_id, done: Future) -> None:
        self._notify(f"Stopping instance {instance_id}")
        for step in self.teardown_steps(instance_id):
            self._notify(f"Teardown: {step.name}")
            try:
                step.action()
            except Exception as e:
                if step.tolerate_failure:
                    self._error(f"Teardown step '{step.name}' failed, continuing: {e}")
                    continue
                self._error(
                    f"Teardown step '{step.name}' failed; instance {instance_id} "
                    f"left in 'stopping': {e}"
                )
                done.set_exception(e)
                return

        with self._lock:
            if self.record.state is LifecycleState.STOPPING and self.record.instance_id == instance_id:
                self.record.state = LifecycleState.DOWN
                self.record.clear_instance()
            else:
                self._warn(f"Status changed during teardown; leaving '{self.record.state.value}'")
            snapshot = self.record.snapshot()
        self._notify("Server stopped!")
        done.set_result(snapshot)

    # -- administrative overrides --

    def force_status(self, state: LifecycleState | str) -> StatusSnapshot:
        """Set the status directly. Forcing ``up`` also adopts the public address.

        Any readiness polling in flight is cancelled along with its future.
        Problems adopting the address are reported, never raised.
        """
        state = LifecycleState(state)
        self._warn(f"Forcing status to be '{state.value}'")
        with self._lock:
            poller, self._poller = self._poller, None
            ready, self._ready = self._ready, None
            self.record.state = state
            self.record.on_ready = None
            instance_id = self.record.instance_id
        if poller:
            poller.cancel()
        if ready:
            ready.cancel()
        if state is LifecycleState.UP:
            self._adopt_address(instance_id)
        return self.get_status()

    def _adopt_address(self, instance_id) -> None:
        if instance_id is None:
            self._error("Cannot look up address: no instance id set")
            return
        try:
            info = self.provider.get_instance(instance_id)
        except ProviderError as e:
            self._error(f"Cannot look up address of instance {instance_id}: {e}")
            return
        self._debug_callback(f"Force status instance info: {info}")
        address = info.public_address
        if not address:
            self._error(f"Instance {instance_id} has no public network; address left unset")
            return
        with self._lock:
            self.record.address = address

    def set_instance_id(self, instance_id) -> StatusSnapshot:
        with self._lock:
            self.record.instance_id = instance_id
            return self.record.snapshot()

    # -- console --

    def send_console_command(self, text: str) -> str | None:
        status = self.get_status()
        if not status.address or status.state in (LifecycleState.DOWN, LifecycleState.STARTING):
            self._warn(f"Refusing to send console command when status is '{status.state.value}'")
            return None
        return self.console.send(text)
