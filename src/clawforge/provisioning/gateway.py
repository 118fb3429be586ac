"""Gateway process start-up and liveness verification.

The gateway is live only when its process exists AND its control port is
listening; a process that never binds the port is not ready.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from clawforge.config import settings
from clawforge.errors import ErrorKind
from clawforge.provisioning.steps import StepResult, StepRunner

log = structlog.get_logger()

STARTUP_SCRIPT_PATH = "/tmp/start-clawdbot.sh"
GATEWAY_LOG_PATH = "/tmp/clawdbot.log"

# Bracketed patterns never match the shell that runs them
GATEWAY_PATTERN = "[c]lawdbot gateway"
PROCESS_CHECK = (
    f"pgrep -f '{GATEWAY_PATTERN}' > /dev/null && echo 'PROCESS_EXISTS' || echo 'NO_PROCESS'"
)
KILL_GATEWAY = f"pkill -f '{GATEWAY_PATTERN}' 2>/dev/null || true"


def startup_script(model_api_key: str, bot_token: str) -> str:
    return f"""#!/bin/bash
# Source bashrc to get environment
source ~/.bashrc 2>/dev/null || true

export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"

export ANTHROPIC_API_KEY="{model_api_key}"
export TELEGRAM_BOT_TOKEN="{bot_token}"

LOG_FILE="{GATEWAY_LOG_PATH}"
stamp() {{ date +'%Y-%m-%d %H:%M:%S'; }}
echo "[$(stamp)] Starting Clawdbot gateway..." >> "$LOG_FILE"
echo "[$(stamp)] Node version: $(node -v 2>&1 || echo 'node not found')" >> "$LOG_FILE"

if ! command -v clawdbot &> /dev/null; then
    echo "[$(stamp)] ERROR: clawdbot command not found" >> "$LOG_FILE"
    echo "[$(stamp)] Clawdbot path: $(find ~/.nvm -name clawdbot 2>/dev/null | head -1)" >> "$LOG_FILE"
    exit 1
fi

if [ -n "$ANTHROPIC_API_KEY" ]; then
    echo "[$(stamp)] ANTHROPIC_API_KEY: SET" >> "$LOG_FILE"
else
    echo "[$(stamp)] ANTHROPIC_API_KEY: NOT SET" >> "$LOG_FILE"
fi
if [ -n "$TELEGRAM_BOT_TOKEN" ]; then
    echo "[$(stamp)] TELEGRAM_BOT_TOKEN: SET" >> "$LOG_FILE"
else
    echo "[$(stamp)] TELEGRAM_BOT_TOKEN: NOT SET" >> "$LOG_FILE"
fi
if [ ! -f ~/.clawdbot/clawdbot.json ]; then
    echo "[$(stamp)] WARNING: Config file not found at ~/.clawdbot/clawdbot.json" >> "$LOG_FILE"
fi

echo "[$(stamp)] Running: clawdbot gateway run" >> "$LOG_FILE"
clawdbot gateway run >> "$LOG_FILE" 2>&1
EXIT_CODE=$?
echo "[$(stamp)] Gateway exited with code: $EXIT_CODE" >> "$LOG_FILE"
exit $EXIT_CODE
"""


@dataclass(frozen=True)
class GatewayStatus:
    """Diagnostic snapshot of the gateway on a resource."""

    running: bool
    port_listening: bool
    process_details: str = ""
    log_tail: str = ""
    startup_script_exists: bool = False

    @property
    def healthy(self) -> bool:
        return self.running and self.port_listening


class GatewayVerifier:
    """Starts the gateway and confirms it is actually serving."""

    STEP = "Start Gateway"

    def __init__(
        self,
        runner: StepRunner,
        *,
        port: int | None = None,
        check_attempts: int | None = None,
        check_interval: float | None = None,
        kill_grace: float = 2.0,
        startup_grace: float = 8.0,
    ) -> None:
        self.runner = runner
        self.port = port or settings.gateway_port
        self.check_attempts = check_attempts or settings.gateway_check_attempts
        self.check_interval = (
            settings.gateway_check_interval_seconds if check_interval is None else check_interval
        )
        self.kill_grace = kill_grace
        self.startup_grace = startup_grace

    @property
    def _port_check(self) -> str:
        port = self.port
        return (
            f"(netstat -tlnp 2>/dev/null | grep -q ':{port}'"
            f" || ss -tlnp 2>/dev/null | grep -q ':{port}')"
            " && echo 'PORT_LISTENING' || echo 'PORT_NOT_LISTENING'"
        )

    async def start(self, model_api_key: str, bot_token: str) -> StepResult:
        """(Re)start the gateway in the background, then verify it."""
        script = await self.runner.write_file(
            STARTUP_SCRIPT_PATH,
            startup_script(model_api_key, bot_token),
            "Create Clawdbot startup script",
            executable=True,
        )
        if not script.ok:
            return script.with_message("Failed to write gateway startup script")

        await self.runner.run(KILL_GATEWAY, "Kill existing gateway process")
        await self.runner.sleep(self.kill_grace)

        launched = await self.runner.run(
            f"nohup {STARTUP_SCRIPT_PATH} >> {GATEWAY_LOG_PATH} 2>&1 & echo $!",
            "Start Clawdbot gateway",
        )
        if not launched.ok:
            return launched.with_message("Failed to launch gateway")

        await self.runner.sleep(self.startup_grace)
        return await self.verify()

    async def verify(self) -> StepResult:
        """Poll until the process exists and the port is listening."""
        for attempt in range(1, self.check_attempts + 1):
            if await self._process_running() and await self._port_listening():
                self.runner.emit(self.STEP, "Clawdbot gateway is running")
                log.info("gateway_ready", attempt=attempt)
                return StepResult.success("running")
            if attempt < self.check_attempts:
                await self.runner.sleep(self.check_interval)

        tail = await self._log_tail()
        message = f"Gateway failed to start. Check {GATEWAY_LOG_PATH} for errors."
        self.runner.emit(self.STEP, message, success=False, output=tail)
        log.warning("gateway_not_ready", attempts=self.check_attempts)
        return StepResult.failure(ErrorKind.VERIFICATION, message, output=tail)

    async def status(self) -> GatewayStatus:
        """Collect process, port, log and script state without changing anything."""
        running = await self._process_running()
        listening = await self._port_listening()
        details = await self.runner.run(
            f"ps aux | grep '{GATEWAY_PATTERN}' || true", "Gateway process details"
        )
        script = await self.runner.run(
            f"test -f {STARTUP_SCRIPT_PATH} && echo 'EXISTS' || echo 'MISSING'",
            "Check gateway startup script",
        )
        return GatewayStatus(
            running=running,
            port_listening=listening,
            process_details=details.output.strip(),
            log_tail=await self._log_tail(),
            startup_script_exists=script.output.strip() == "EXISTS",
        )

    async def _process_running(self) -> bool:
        result = await self.runner.run(PROCESS_CHECK, "Check gateway process")
        return result.output.strip() == "PROCESS_EXISTS"

    async def _port_listening(self) -> bool:
        result = await self.runner.run(self._port_check, "Check gateway port")
        return result.output.strip() == "PORT_LISTENING"

    async def _log_tail(self) -> str:
        result = await self.runner.run(
            f'tail -20 {GATEWAY_LOG_PATH} 2>/dev/null || echo "No log file"', "Check gateway logs"
        )
        return result.output
