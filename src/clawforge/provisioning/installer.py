"""Package installation on a fresh compute resource.

``PackageInstaller`` copes with the package manager being held by boot-time
updaters. ``BackgroundInstaller`` installs the agent runtime in a detached
process and polls for its completion sentinel, since the install outlives
any single remote call.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from clawforge.config import settings
from clawforge.errors import ErrorKind, LockContentionError
from clawforge.provisioning.steps import StepResult, StepRunner

log = structlog.get_logger()

LOCK_MARKERS = (
    "could not get lock",
    "unable to acquire",
    "dpkg was interrupted",
    "dpkg --configure -a",
    "is another process using it",
)
INTERRUPTED_MARKERS = ("dpkg was interrupted", "dpkg --configure -a")
LOCK_FILES = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/apt/lists/lock",
    "/var/cache/apt/archives/lock",
    "/var/lib/dpkg/lock",
)
BASE_PACKAGES = "python3 python3-pip python3-venv git openssh-client procps curl wget"

NVM_ENV = 'export NVM_DIR="$HOME/.nvm" && [ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"'
NVM_INSTALL_URL = "https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.0/install.sh"
INSTALL_SCRIPT_PATH = "/tmp/install-clawdbot.sh"
INSTALL_LOG_PATH = "/tmp/clawdbot-install.log"
INSTALL_SENTINEL = "INSTALL_COMPLETE"

INSTALL_SCRIPT = f"""#!/bin/bash
set -e
export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"
echo "Starting Clawdbot installation..." > {INSTALL_LOG_PATH}
npm install -g clawdbot@latest >> {INSTALL_LOG_PATH} 2>&1
echo "{INSTALL_SENTINEL}" >> {INSTALL_LOG_PATH}
"""

CHECK_SENTINEL = (
    f'grep -q "{INSTALL_SENTINEL}" {INSTALL_LOG_PATH} 2>/dev/null && echo "DONE" || echo "PENDING"'
)
CHECK_NPM_ALIVE = 'pgrep -f "[n]pm install" > /dev/null && echo "RUNNING" || echo "NOT_RUNNING"'
VERIFY_BINARY = "ls ~/.nvm/versions/node/*/bin/clawdbot 2>/dev/null | head -1"
READ_VERSION = (
    "cat ~/.nvm/versions/node/*/lib/node_modules/clawdbot/package.json 2>/dev/null"
    " | grep -o '\"version\": \"[^\"]*\"' | head -1 | cut -d'\"' -f4"
)


def _has_marker(output: str, markers: tuple[str, ...]) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in markers)


class PackageInstaller:
    """Lock-aware apt driver for freshly booted VMs."""

    STEP = "Wait for apt"

    def __init__(
        self,
        runner: StepRunner,
        *,
        lock_attempts: int | None = None,
        lock_interval: float | None = None,
        install_attempts: int = 5,
    ) -> None:
        self.runner = runner
        self.lock_attempts = lock_attempts or settings.apt_lock_attempts
        self.lock_interval = (
            settings.apt_lock_interval_seconds if lock_interval is None else lock_interval
        )
        self.install_attempts = install_attempts
        self._sudo: str | None = None

    async def detect_privilege(self) -> str:
        """Return ``"sudo "`` unless the remote user is root."""
        if self._sudo is None:
            result = await self.runner.run("whoami", "Detect user")
            user = result.output.strip()
            self._sudo = "" if user == "root" else "sudo "
            log.debug("remote_user_detected", user=user, sudo=bool(self._sudo))
        return self._sudo

    async def wait_for_package_manager(self) -> StepResult:
        """Run ``apt-get update`` until it goes through without lock errors."""
        sudo = await self.detect_privilege()
        self.runner.emit(self.STEP, "Waiting for package manager to be available...")

        for attempt in range(1, self.lock_attempts + 1):
            result = await self.runner.run(
                f"{sudo}DEBIAN_FRONTEND=noninteractive apt-get update -qq 2>&1", self.STEP
            )
            try:
                self._check_lock(result)
                self.runner.emit(self.STEP, "Package manager is ready (apt-get update succeeded)")
                return StepResult.success(result.output)
            except LockContentionError as e:
                if e.details.get("interrupted"):
                    self.runner.emit(self.STEP, "Fixing interrupted dpkg...")
                    await self.repair()
                    await self.runner.sleep(5)
                    continue
                self.runner.emit(
                    self.STEP,
                    f"Package manager busy, waiting... ({attempt}/{self.lock_attempts})"
                    f" - {result.output[:100]}",
                )

            if attempt < self.lock_attempts:
                await self.runner.sleep(self.lock_interval)

        await self.force_remediate()
        return StepResult.success("package manager force-remediated")

    def _check_lock(self, result: StepResult) -> None:
        if result.ok and not _has_marker(result.output, LOCK_MARKERS):
            return
        raise LockContentionError(
            "Package manager is busy",
            details={"interrupted": _has_marker(result.output, INTERRUPTED_MARKERS)},
        )

    async def repair(self) -> None:
        sudo = await self.detect_privilege()
        await self.runner.run(f"{sudo}dpkg --configure -a 2>&1 || true", "Repair dpkg")

    async def force_remediate(self) -> None:
        """Kill lock holders and remove stale lock files, then continue."""
        sudo = await self.detect_privilege()
        self.runner.emit(self.STEP, "Attempting to force-fix package manager...")
        log.warning("apt_force_remediate")
        await self.runner.run(
            f"{sudo}pkill -9 -f '[u]nattended-upgr' 2>/dev/null || true",
            "Stop unattended upgrades",
        )
        await self.runner.run(
            f"{sudo}pkill -9 -f '[a]pt' 2>/dev/null || true", "Stop apt processes"
        )
        await self.runner.run(
            f"{sudo}rm -f {' '.join(LOCK_FILES)} 2>/dev/null || true", "Remove apt lock files"
        )
        await self.runner.run(f"{sudo}dpkg --configure -a 2>/dev/null || true", "Repair dpkg")
        await self.runner.sleep(3)

    async def install_base_packages(self) -> StepResult:
        """Install python3, git, ssh client and friends."""
        step = "Install base packages"
        sudo = await self.detect_privilege()
        detected = await self.runner.run(
            'which apt-get apk yum dnf 2>/dev/null | head -1 || echo "no-pkg-mgr"',
            "Detect package manager",
        )
        manager = detected.output.strip()

        if "apk" in manager:
            self.runner.emit(step, "Detected Alpine Linux, using apk...")
            result = await self.runner.run(
                f"{sudo}apk update && {sudo}apk add python3 py3-pip git openssh curl wget", step
            )
            if result.ok:
                return result
            return result.with_message(f"apk install failed: {result.output[:200]}")

        if "apt-get" not in manager:
            self.runner.emit(step, f"Non-standard package manager detected: {manager}")
            existing = await self.runner.run("python3 --version && git --version", step)
            if existing.ok:
                return existing

        await self.wait_for_package_manager()

        install_cmd = (
            f"{sudo}DEBIAN_FRONTEND=noninteractive apt-get install -y {BASE_PACKAGES}"
        )
        result = StepResult.failure(ErrorKind.GENERIC, "not attempted")
        for attempt in range(1, self.install_attempts + 1):
            self.runner.emit(
                step, f"Installing packages... (attempt {attempt}/{self.install_attempts})"
            )
            result = await self.runner.run(install_cmd, step)
            if result.ok:
                break
            if attempt == self.install_attempts:
                break
            if _has_marker(result.output, LOCK_MARKERS[:3]):
                if _has_marker(result.output, INTERRUPTED_MARKERS):
                    await self.repair()
                self.runner.emit(step, "Package manager locked, retrying in 20s...")
                await self.runner.sleep(20)
            else:
                self.runner.emit(step, f"Install failed: {result.output[:150]}... retrying in 10s")
                await self.runner.sleep(10)

        if not result.ok:
            return result.with_message(
                f"Failed after {self.install_attempts} attempts: {result.output[:300]}"
            )

        verify = await self.runner.run("python3 --version && git --version", "Verify base packages")
        if not verify.ok:
            return StepResult.failure(
                ErrorKind.VERIFICATION,
                f"Installation verification failed: {verify.output}",
                output=verify.output,
            )
        return verify


@dataclass(frozen=True)
class InstallOutcome:
    result: StepResult
    version: str | None = None
    polls: int = 0


class BackgroundInstaller:
    """Installs the clawdbot runtime (NVM + Node 22 + npm package)."""

    STEP = "Install Clawdbot"

    def __init__(
        self,
        runner: StepRunner,
        *,
        poll_interval: float | None = None,
        poll_attempts: int | None = None,
        extension: int | None = None,
        fallback_version: str | None = None,
    ) -> None:
        self.runner = runner
        self.poll_interval = (
            settings.install_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.poll_attempts = poll_attempts or settings.install_poll_attempts
        self.extension = settings.install_poll_extension if extension is None else extension
        self.fallback_version = fallback_version or settings.runtime_fallback_version
        self._polls = 0

    async def prepare_node(self) -> StepResult:
        self.runner.emit(self.STEP, "Installing NVM...")
        nvm = await self.runner.run(f"curl -o- {NVM_INSTALL_URL} | bash", "Install NVM")
        if not nvm.ok:
            return nvm.with_message("Failed to install NVM")

        self.runner.emit(self.STEP, "Installing Node.js 22...")
        node = await self.runner.run(
            f"{NVM_ENV} && nvm install 22 && nvm alias default 22", "Install Node.js 22"
        )
        if not node.ok:
            return node.with_message("Failed to install Node.js 22")

        version = await self.runner.run(f"{NVM_ENV} && node -v", "Verify Node.js")
        self.runner.emit(self.STEP, f"Node.js installed: {version.output.strip()}")
        return node

    async def install(self) -> InstallOutcome:
        self._polls = 0
        node = await self.prepare_node()
        if not node.ok:
            return InstallOutcome(node)

        self.runner.emit(self.STEP, "Installing Clawdbot (this may take a few minutes)...")
        script = await self.runner.write_file(
            INSTALL_SCRIPT_PATH, INSTALL_SCRIPT, "Create Clawdbot install script", executable=True
        )
        if not script.ok:
            return InstallOutcome(script.with_message("Failed to write Clawdbot install script"))

        launched = await self.runner.run(
            f"nohup {INSTALL_SCRIPT_PATH} > /tmp/clawdbot-install-out.log 2>&1 &",
            "Start Clawdbot installation (background)",
        )
        if not launched.ok:
            return InstallOutcome(launched.with_message("Failed to start Clawdbot installation"))

        if not await self._poll(self.poll_attempts, "Check Clawdbot installation progress"):
            alive = await self.runner.run(CHECK_NPM_ALIVE, "Check if npm is still running")
            if alive.output.strip() != "RUNNING":
                return await self._timed_out("Clawdbot installation stopped before completing")

            self.runner.emit(self.STEP, "npm still installing, extending timeout...")
            if not await self._poll(
                self.extension, "Check Clawdbot installation progress (extended)"
            ):
                return await self._timed_out("Clawdbot installation did not finish in time")

        verify = await self.runner.run(VERIFY_BINARY, "Verify Clawdbot")
        if not verify.ok or not verify.output.strip() or "No such file" in verify.output:
            return InstallOutcome(
                StepResult.failure(
                    ErrorKind.VERIFICATION,
                    "Clawdbot binary not found after installation",
                    output=verify.output,
                ),
                polls=self._polls,
            )

        version_result = await self.runner.run(READ_VERSION, "Get Clawdbot version")
        version = version_result.output.strip() if version_result.ok else ""
        version = version or self.fallback_version

        self.runner.emit(self.STEP, f"Clawdbot {version} installed successfully")
        log.info("runtime_installed", version=version, polls=self._polls)
        return InstallOutcome(StepResult.success(verify.output), version=version, polls=self._polls)

    async def _poll(self, attempts: int, step: str) -> bool:
        for i in range(attempts):
            await self.runner.sleep(self.poll_interval)
            self._polls += 1
            check = await self.runner.run(CHECK_SENTINEL, step)
            if check.output.strip() == "DONE":
                return True
            self.runner.emit(self.STEP, f"Installing Clawdbot... ({i + 1}/{attempts})")
        return False

    async def _timed_out(self, message: str) -> InstallOutcome:
        tail = await self.runner.run(
            f'tail -20 {INSTALL_LOG_PATH} 2>/dev/null || echo "No log file"',
            "Read Clawdbot install log",
        )
        log.warning("runtime_install_timeout", polls=self._polls)
        return InstallOutcome(
            StepResult.failure(ErrorKind.INSTALL_TIMEOUT, message, output=tail.output),
            polls=self._polls,
        )
