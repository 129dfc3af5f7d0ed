import threading
from dataclasses import dataclass

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from mcdrop.providers.base import InstanceProvider, ProviderError


class InstanceNotReady(Exception):
    """Instance is not active yet or has no public network."""


class ReadinessTimeout(RuntimeError):
    pass


class PollCancelled(Exception):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval retry. Unbounded unless an attempt cap or deadline is set."""
    interval: float = 5.0
    max_attempts: int | None = None
    deadline: float | None = None

    def stop(self):
        stop = stop_never
        if self.max_attempts is not None:
            stop = stop_after_attempt(self.max_attempts)
        if self.deadline is not None:
            by_delay = stop_after_delay(self.deadline)
            stop = by_delay if stop is stop_never else stop | by_delay
        return stop


class ReadinessPoller:
    def __init__(self, provider: InstanceProvider, policy: RetryPolicy | None = None,
                 settle_delay: float = 30.0, on_status=None, on_debug=None):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.settle_delay = settle_delay
        self.on_status = on_status
        self.on_debug = on_debug
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    def _notify(self, message: str) -> None:
        if self.on_status:
            self.on_status(message)

    def _sleep(self, seconds: float) -> None:
        if self._cancelled.wait(seconds):
            raise PollCancelled()

    def _check(self, instance_id) -> str:
        if self._cancelled.is_set():
            raise PollCancelled()
        try:
            info = self.provider.get_instance(instance_id)
        except ProviderError as e:
            if self.on_debug:
                self.on_debug(f"Instance {instance_id} status query failed: {e}")
            raise InstanceNotReady(f"status query failed: {e}") from e
        if not info.is_active:
            raise InstanceNotReady(f"Instance {instance_id} not active")
        address = info.public_address
        if not address:
            raise InstanceNotReady(f"Instance {instance_id} is active but without a public network")
        return address

    def _before_sleep(self, retry_state) -> None:
        exc = retry_state.outcome.exception()
        self._notify(f"{exc}. Waiting... (attempt {retry_state.attempt_number})")

    def await_ready(self, instance_id) -> str:
        """Block until the instance is active with a public address, then settle.

        Raises ReadinessTimeout when the policy gives up and PollCancelled
        after cancel().
        """
        retrying = Retrying(
            stop=self.policy.stop(),
            wait=wait_fixed(self.policy.interval),
            retry=retry_if_exception_type(InstanceNotReady),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
        )
        try:
            address = retrying(self._check, instance_id)
        except RetryError as e:
            raise ReadinessTimeout(
                f"Instance {instance_id} did not become reachable "
                f"after {e.last_attempt.attempt_number} attempts"
            ) from e
        self._notify(f"Instance {instance_id} reachable at {address}; waiting {self.settle_delay}s for sshd")
        self._sleep(self.settle_delay)
        return address

    def _run(self, instance_id, on_ready, on_failure) -> None:
        try:
            address = self.await_ready(instance_id)
        except PollCancelled:
            if self.on_debug:
                self.on_debug(f"Readiness polling for {instance_id} cancelled")
            return
        except Exception as e:
            on_failure(e)
            return
        on_ready(address)

    def start(self, instance_id, on_ready, on_failure) -> None:
        self._thread = threading.Thread(
            target=self._run, args=(instance_id, on_ready, on_failure),
            name=f"mcdrop-poll-{instance_id}", daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread:
            self._thread.join(timeout)
