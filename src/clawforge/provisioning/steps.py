"""Command-step runner: one named step = one remote command + one event."""

from __future__ import annotations

import base64
import shlex
from dataclasses import dataclass

import structlog

from clawforge.config import settings
from clawforge.errors import (
    EXCEPTION_FOR_KIND,
    BillingRestrictionError,
    ClawforgeError,
    ErrorKind,
    GenericStepFailure,
    TransportError,
)
from clawforge.execution.base import RemoteExecutor
from clawforge.provisioning.cancel import CancelToken
from clawforge.provisioning.events import EventChannel, ProgressEvent, truncate_output

log = structlog.get_logger()


@dataclass(frozen=True)
class StepResult:
    """Outcome of a step. Failures carry an ``ErrorKind`` and a message."""

    ok: bool
    output: str = ""
    kind: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, output: str = "") -> StepResult:
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, output: str = "") -> StepResult:
        return cls(ok=False, output=output, kind=kind, message=message)

    def with_message(self, message: str) -> StepResult:
        """Same failure, new message."""
        if self.ok:
            return self
        return StepResult(ok=False, output=self.output, kind=self.kind, message=message)

    def to_exception(self) -> ClawforgeError:
        kind = self.kind or ErrorKind.GENERIC
        message = self.message or self.output or "Step failed"
        if kind is ErrorKind.BILLING_RESTRICTION:
            return BillingRestrictionError("unknown", message)
        exc_type = EXCEPTION_FOR_KIND.get(kind, GenericStepFailure)
        return exc_type(message, details={"output": truncate_output(self.output)})

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise self.to_exception()


class StepRunner:
    """Runs named steps on one executor for one provisioning run.

    Transport failures are retried only when the executor allows it, with a
    linear backoff of ``(attempt + 1) * backoff`` seconds. Non-zero exits are
    never retried. Exactly one progress event is emitted per ``run`` call.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        token: CancelToken | None = None,
        events: EventChannel | None = None,
        retries: int | None = None,
        backoff: float | None = None,
    ) -> None:
        self.executor = executor
        self.token = token or CancelToken()
        self.events = events
        self.retries = settings.step_retries if retries is None else retries
        self.backoff = settings.step_backoff_seconds if backoff is None else backoff

    async def run(
        self,
        command: str,
        step: str,
        *,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> StepResult:
        budget = self.retries if retries is None else retries
        if not self.executor.retry_transport:
            budget = 0

        attempt = 0
        while True:
            self.token.raise_if_cancelled()
            try:
                result = await self.executor.execute(command, timeout=timeout)
            except TransportError as e:
                if attempt < budget:
                    delay = (attempt + 1) * self.backoff
                    log.warning(
                        "step_transport_retry",
                        step=step,
                        attempt=attempt + 1,
                        delay=delay,
                        error=e.message,
                    )
                    attempt += 1
                    await self.token.sleep(delay)
                    continue
                self.emit(step, f"Error: {e.message}", success=False)
                return StepResult.failure(ErrorKind.TRANSPORT, e.message, output=e.message)

            if result.success:
                self.emit(step, f"Completed: {step}", output=result.output)
                return StepResult.success(result.output)

            self.emit(step, f"Failed: {step}", success=False, output=result.output)
            return StepResult.failure(
                ErrorKind.GENERIC,
                f"{step} failed with exit code {result.exit_code}",
                output=result.output,
            )

    async def write_file(
        self,
        path: str,
        content: str,
        step: str,
        *,
        executable: bool = False,
    ) -> StepResult:
        """Write ``content`` to ``path`` through the command channel."""
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        command = f"echo '{encoded}' | base64 -d > {path}"
        if executable:
            command += f" && chmod +x {path}"
        return await self.run(command, step)

    async def wait_until_ready(
        self,
        attempts: int | None = None,
        interval: float | None = None,
    ) -> StepResult:
        """Poll the resource until a trivial command exits 0."""
        attempts = attempts or settings.readiness_attempts
        interval = settings.readiness_interval_seconds if interval is None else interval
        last_error = ""
        for attempt in range(1, attempts + 1):
            self.token.raise_if_cancelled()
            try:
                result = await self.executor.execute('echo "ready"')
                if result.success:
                    self.emit("Wait for VM", "VM is ready")
                    return StepResult.success(result.output)
                last_error = result.output
            except TransportError as e:
                last_error = e.message
            log.debug("vm_not_ready", attempt=attempt, attempts=attempts)
            if attempt < attempts:
                await self.token.sleep(interval)

        message = f"VM not ready after {attempts} attempts"
        self.emit("Wait for VM", message, success=False, output=last_error)
        return StepResult.failure(ErrorKind.TRANSPORT, message, output=last_error)

    async def sleep(self, seconds: float) -> None:
        await self.token.sleep(seconds)

    def emit(
        self,
        step: str,
        message: str,
        success: bool = True,
        output: str | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            step=step, message=message, success=success, output=truncate_output(output)
        )
        if self.events is not None:
            self.events.publish(event)
        log.debug("step_event", step=step, success=success, message=message)
        return event


def quote(value: str) -> str:
    """Shell-quote a value for interpolation into a remote command."""
    return shlex.quote(value)
