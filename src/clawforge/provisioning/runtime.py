"""Commands that bootstrap the agent runtime on a resource.

Covers the deploy key, git identity, vault clone and sync daemon, knowledge
links, and the clawdbot configuration written when a messaging channel is
supplied. Each operation returns a ``StepResult``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from clawforge.config import settings
from clawforge.errors import ErrorKind
from clawforge.provisioning.steps import StepResult, StepRunner, quote

log = structlog.get_logger()

WORKSPACE_DIR = "/home/user/clawd"
KNOWLEDGE_DIR = f"{WORKSPACE_DIR}/knowledge"
REPOSITORIES_DIR = "~/repositories"
CONFIG_DIR = "~/.clawdbot"
COMMUNICATION_PATH = "/api/integrations/clawdbot-communication"

SYNC_SCRIPT = """#!/bin/bash
cd ~/vault
git fetch origin main
git reset --hard origin/main
"""

SYNC_DAEMON_SCRIPT = """#!/bin/bash
# Vault sync daemon - runs every 60 seconds
LOG_FILE=~/vault-sync.log

echo "[$(date)] Vault sync daemon starting..." >> $LOG_FILE

while true; do
    ~/sync-vault.sh >> $LOG_FILE 2>&1
    echo "[$(date)] Sync completed" >> $LOG_FILE
    sleep 60
done
"""

CRON_INSTALL = (
    '(crontab -l 2>/dev/null | grep -v "sync-vault.sh"; '
    'echo "* * * * * $HOME/sync-vault.sh >> $HOME/vault-sync.log 2>&1") | crontab -'
)
STOP_SYNC_DAEMON = "pkill -f '[v]ault-sync-daemon.sh' 2>/dev/null || true"
KEY_EXISTS_CHECK = (
    "test -s ~/.ssh/id_ed25519 && test -s ~/.ssh/id_ed25519.pub"
    " && echo 'KEY_EXISTS' || echo 'NO_KEY'"
)

CHANNEL_EXPORTS_HEADER = "# Clawdbot configuration"
CHANNEL_EXPORTS = (
    "ANTHROPIC_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "SAMANTHA_API_URL",
    "SAMANTHA_USER_ID",
    "SAMANTHA_GATEWAY_TOKEN",
)


def clear_exports(names: tuple[str, ...], header: str | None = None) -> str:
    """Command dropping earlier ``export NAME=`` lines from ``~/.bashrc``."""
    expressions = [f"/^export {name}=/d" for name in names]
    if header:
        expressions.append(f"/^{header}$/d")
    return f"touch ~/.bashrc && sed -i {quote(';'.join(expressions))} ~/.bashrc"


HEARTBEAT_MD = f"""# Heartbeat Checklist

During heartbeat, check the following:

1. **Recent vault changes**: `find {KNOWLEDGE_DIR}/vault -type f -mmin -60`
2. **Task files**: Look for tasks.md, TODO.md, or task lists in the vault
3. **Pending work**: Identify any work that needs to be done

## Response Format

- If nothing needs attention: Reply with `HEARTBEAT_OK`
- If tasks found: Describe what you're working on and begin execution
- If significant updates: Report findings to the user
"""


def claude_md(api_base_url: str) -> str:
    return f"""# Samantha - Autonomous AI Assistant

You are Samantha, an autonomous AI assistant with access to a knowledge repository and
communication capabilities.

Your workspace is at {WORKSPACE_DIR}.

## Knowledge Directory Structure
- {KNOWLEDGE_DIR}/vault - The main GitHub vault repository (auto-synced every minute)
- {KNOWLEDGE_DIR}/* - Additional knowledge repositories

## Communication

The communication API endpoint is available at: {api_base_url}{COMMUNICATION_PATH}

Use the helper script to interact with it:
```bash
{WORKSPACE_DIR}/send_communication.sh send_email --to "email@example.com" --subject "Subject" --body "Body"
{WORKSPACE_DIR}/send_communication.sh reply_email --message-id "MESSAGE_ID" --body "Reply"
{WORKSPACE_DIR}/send_communication.sh create_event --summary "Meeting" --start "..." --end "..."
```

## Behavior

**When receiving user messages:** prioritize and execute user-requested tasks immediately.

**During heartbeat (periodic check):**
1. Check {KNOWLEDGE_DIR}/vault for recently modified files
2. Look for tasks.md, TODO.md, or any task lists in the vault
3. If you find actionable tasks, create a plan and begin execution
4. Report significant progress or findings to the user via chat

Always keep the user informed of what you're working on and any significant decisions.
"""


def communication_script(api_base_url: str, user_id: str, gateway_token: str) -> str:
    return f"""#!/bin/bash
# Communication API helper for Clawdbot
# Usage: send_communication.sh <action> [--key value ...]

API_URL="{api_base_url}{COMMUNICATION_PATH}"
USER_ID="{user_id}"
GATEWAY_TOKEN="{gateway_token}"

if [ -z "$USER_ID" ]; then
  echo "Error: User ID not configured" >&2
  exit 1
fi

ACTION="$1"
shift

JSON_ARGS=""
while [ $# -gt 0 ]; do
  KEY="$1"
  shift
  if [[ "$KEY" == --* ]]; then
    KEY="${{KEY#--}}"
    VALUE="$1"
    shift
    if [ -z "$JSON_ARGS" ]; then
      JSON_ARGS="\\"$KEY\\": \\"$VALUE\\""
    else
      JSON_ARGS="$JSON_ARGS, \\"$KEY\\": \\"$VALUE\\""
    fi
  fi
done

PAYLOAD="{{\\"action\\": \\"$ACTION\\", \\"gatewayToken\\": \\"$GATEWAY_TOKEN\\", \\"userId\\": \\"$USER_ID\\""
if [ -n "$JSON_ARGS" ]; then
  PAYLOAD="$PAYLOAD, $JSON_ARGS"
fi
PAYLOAD="$PAYLOAD}}"

curl -s -X POST "$API_URL" \\
  -H "Content-Type: application/json" \\
  -d "$PAYLOAD"
"""


@dataclass(frozen=True)
class ChannelConfig:
    """Credentials and options for the messaging gateway."""

    model_api_key: str
    bot_token: str
    allowed_user_id: str | None = None
    heartbeat_minutes: int = 30
    owner_id: str = ""
    api_base_url: str = field(default_factory=lambda: settings.api_base_url)


@dataclass(frozen=True)
class RepositoryRef:
    name: str
    ssh_url: str
    html_url: str | None = None
    description: str | None = None


def build_runtime_config(
    *,
    version: str,
    bot_token: str,
    gateway_token: str,
    allowed_user_id: str | None = None,
    heartbeat_minutes: int = 30,
    port: int = 18789,
) -> dict[str, Any]:
    """clawdbot.json contents for a telegram-connected agent."""
    telegram: dict[str, Any] = {
        "enabled": True,
        "botToken": bot_token,
        "dmPolicy": "allowlist",
    }
    if allowed_user_id:
        telegram["allowFrom"] = [allowed_user_id]
    telegram["groupPolicy"] = "allowlist"

    return {
        "meta": {"lastTouchedVersion": version},
        "auth": {"profiles": {"anthropic:default": {"provider": "anthropic", "mode": "api_key"}}},
        "agents": {
            "defaults": {
                "workspace": WORKSPACE_DIR,
                "compaction": {"mode": "safeguard"},
                "maxConcurrent": 4,
                "subagents": {"maxConcurrent": 8},
                "heartbeat": {
                    "every": f"{heartbeat_minutes}m",
                    "target": "last",
                    "activeHours": {"start": "00:00", "end": "24:00"},
                    "includeReasoning": True,
                },
            }
        },
        "messages": {"ackReactionScope": "group-mentions"},
        "commands": {"native": "auto", "nativeSkills": "auto"},
        "channels": {"telegram": telegram},
        "gateway": {
            "port": port,
            "mode": "local",
            "bind": "loopback",
            "auth": {"mode": "token", "token": gateway_token},
        },
        "plugins": {"entries": {"telegram": {"enabled": True}}},
    }


def repositories_index(repositories: list[RepositoryRef]) -> str:
    """Markdown index of knowledge repositories, stored in the vault."""
    lines = [
        "# Connected GitHub Repositories",
        "",
        f"Cloned into `{REPOSITORIES_DIR}` and linked under `{KNOWLEDGE_DIR}`.",
        "",
    ]
    for repo in repositories:
        lines.append(f"## {repo.name}")
        if repo.description:
            lines.append(repo.description)
        if repo.html_url:
            lines.append(f"- URL: {repo.html_url}")
        lines.append(f"- Local path: `{KNOWLEDGE_DIR}/{repo.name}`")
        lines.append("")
    return "\n".join(lines)


class RuntimeBootstrap:
    """Runtime bootstrap operations on one resource."""

    def __init__(self, runner: StepRunner) -> None:
        self.runner = runner

    async def generate_deploy_key(
        self, label: str = "samantha-vm", *, reuse_existing: bool = False
    ) -> tuple[StepResult, str]:
        """Create an ed25519 keypair and return the public half.

        With ``reuse_existing`` a keypair already on the resource is kept, so a
        resumed run does not rotate the key registered upstream.
        """
        if reuse_existing:
            existing = await self.runner.run(KEY_EXISTS_CHECK, "Check existing SSH key")
            if existing.output.strip() == "KEY_EXISTS":
                public = await self.runner.run("cat ~/.ssh/id_ed25519.pub", "Read public key")
                public_key = public.output.strip()
                if public.ok and public_key:
                    self.runner.emit("Generate SSH key", "Reusing existing SSH key")
                    return StepResult.success(public_key), public_key

        mkdir = await self.runner.run(
            "mkdir -p ~/.ssh && chmod 700 ~/.ssh", "Create .ssh directory"
        )
        if not mkdir.ok:
            return mkdir.with_message("Failed to create ~/.ssh"), ""

        keygen_check = await self.runner.run(
            "which ssh-keygen || command -v ssh-keygen", "Check ssh-keygen availability"
        )
        if not keygen_check.ok or not keygen_check.output.strip():
            installed = await self.runner.run(
                "sudo apt-get update -qq && sudo apt-get install -y -qq openssh-client",
                "Install openssh-client",
            )
            if not installed.ok:
                return installed.with_message("ssh-keygen is not available"), ""

        await self.runner.run(
            "rm -f ~/.ssh/id_ed25519 ~/.ssh/id_ed25519.pub", "Remove existing SSH key if present"
        )
        keygen = await self.runner.run(
            f'ssh-keygen -t ed25519 -f ~/.ssh/id_ed25519 -N "" -C {quote(label)}',
            "Generate SSH key",
        )
        if not keygen.ok:
            return keygen.with_message("Failed to generate SSH key"), ""

        public = await self.runner.run("cat ~/.ssh/id_ed25519.pub", "Read public key")
        public_key = public.output.strip()
        if not public.ok or not public_key:
            return StepResult.failure(
                ErrorKind.VERIFICATION, "Public key missing after generation", public.output
            ), ""
        return StepResult.success(public_key), public_key

    async def configure_git(self, name: str, email: str) -> StepResult:
        commands = [
            f"git config --global user.name {quote(name)}",
            f"git config --global user.email {quote(email)}",
            "git config --global init.defaultBranch main",
            "mkdir -p ~/.ssh && ssh-keyscan github.com >> ~/.ssh/known_hosts 2>/dev/null",
        ]
        result = StepResult.success()
        for command in commands:
            result = await self.runner.run(command, "Configure Git")
            if not result.ok:
                return result.with_message("Failed to configure Git")
        return result

    async def clone_vault(self, ssh_url: str) -> StepResult:
        result = await self.runner.run(
            f"rm -rf ~/vault && git clone {quote(ssh_url)} ~/vault", "Clone vault repository"
        )
        if not result.ok:
            return result.with_message("Failed to clone vault repository")
        return result

    async def install_sync(self) -> StepResult:
        """Install the periodic vault pull, replacing any previous entry."""
        script = await self.runner.write_file(
            "~/sync-vault.sh", SYNC_SCRIPT, "Create sync script", executable=True
        )
        if not script.ok:
            return script.with_message("Failed to create vault sync script")
        daemon = await self.runner.write_file(
            "~/vault-sync-daemon.sh",
            SYNC_DAEMON_SCRIPT,
            "Create sync daemon script",
            executable=True,
        )
        if not daemon.ok:
            return daemon.with_message("Failed to create vault sync daemon")

        cron = await self.runner.run(CRON_INSTALL, "Setup cron job for vault sync")
        if cron.ok:
            self.runner.emit("Git Sync", "Vault sync configured via cron (every 1 minute)")
            return cron

        self.runner.emit("Git Sync", "Cron not available, starting background sync daemon")
        # Stop a previous daemon so restarts never stack loops
        await self.runner.run(STOP_SYNC_DAEMON, "Stop previous sync daemon")
        started = await self.runner.run(
            "nohup ~/vault-sync-daemon.sh > /dev/null 2>&1 &", "Start vault sync daemon"
        )
        if not started.ok:
            return started.with_message("Failed to set up Git sync")
        return started

    async def link_vault(self) -> StepResult:
        await self.runner.run(f"mkdir -p {KNOWLEDGE_DIR}", "Create Clawdbot knowledge directory")
        result = await self.runner.run(
            f"ln -sfn ~/vault {KNOWLEDGE_DIR}/vault", "Link vault to Clawdbot knowledge"
        )
        if not result.ok:
            return result.with_message("Failed to link vault to knowledge directory")
        self.runner.emit("Link vault", f"Vault linked to {KNOWLEDGE_DIR}/vault")
        return result

    async def clone_repositories(self, repositories: list[RepositoryRef]) -> dict[str, str]:
        """Clone and link extra repositories. Returns ``{name: error}`` for failures."""
        errors: dict[str, str] = {}
        await self.runner.run(
            f"mkdir -p {REPOSITORIES_DIR} {KNOWLEDGE_DIR}", "Create repositories directory"
        )
        for repo in repositories:
            path = f"{REPOSITORIES_DIR}/{repo.name}"
            cloned = await self.runner.run(
                f"rm -rf {path} && git clone {quote(repo.ssh_url)} {path}",
                f"Clone repository: {repo.name}",
            )
            if not cloned.ok:
                errors[repo.name] = cloned.output[:300] or (cloned.message or "clone failed")
                continue
            linked = await self.runner.run(
                f"ln -sfn {path} {KNOWLEDGE_DIR}/{repo.name}",
                f"Link {repo.name} to Clawdbot workspace",
            )
            if not linked.ok:
                errors[repo.name] = linked.output[:300] or "link failed"

        linked_count = len(repositories) - len(errors)
        self.runner.emit(
            "Knowledge Setup",
            f"Linked {linked_count} repositories to Clawdbot workspace",
            success=not errors,
        )
        return errors

    async def configure_channel(self, channel: ChannelConfig, version: str) -> StepResult:
        """Write the clawdbot config, workspace docs, helper script and env."""
        step = "Setup Clawdbot"
        await self.runner.run(
            f"mkdir -p {CONFIG_DIR} {KNOWLEDGE_DIR}", "Create Clawdbot directories"
        )

        token_result = await self.runner.run("openssl rand -hex 24", "Generate gateway token")
        gateway_token = token_result.output.strip() if token_result.ok else ""
        if not gateway_token:
            return StepResult.failure(
                ErrorKind.GENERIC, "Failed to generate gateway token", token_result.output
            )

        await self.runner.write_file(
            f"{WORKSPACE_DIR}/CLAUDE.md", claude_md(channel.api_base_url), "Create CLAUDE.md"
        )
        await self.runner.write_file(
            f"{WORKSPACE_DIR}/HEARTBEAT.md", HEARTBEAT_MD, "Create HEARTBEAT.md checklist"
        )

        config = build_runtime_config(
            version=version,
            bot_token=channel.bot_token,
            gateway_token=gateway_token,
            allowed_user_id=channel.allowed_user_id,
            heartbeat_minutes=channel.heartbeat_minutes,
            port=settings.gateway_port,
        )
        written = await self.runner.write_file(
            f"{CONFIG_DIR}/clawdbot.json", json.dumps(config, indent=2), "Write Clawdbot config"
        )
        if not written.ok:
            return written.with_message("Failed to configure Telegram")

        await self.runner.write_file(
            f"{WORKSPACE_DIR}/send_communication.sh",
            communication_script(channel.api_base_url, channel.owner_id, gateway_token),
            "Create communication helper script",
            executable=True,
        )

        exports = "\n".join(
            [
                "",
                CHANNEL_EXPORTS_HEADER,
                'export NVM_DIR="$HOME/.nvm"',
                '[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"',
                f"export ANTHROPIC_API_KEY={quote(channel.model_api_key)}",
                f"export TELEGRAM_BOT_TOKEN={quote(channel.bot_token)}",
                f"export SAMANTHA_API_URL={quote(channel.api_base_url)}",
                f"export SAMANTHA_USER_ID={quote(channel.owner_id)}",
                f"export SAMANTHA_GATEWAY_TOKEN={quote(gateway_token)}",
                "",
            ]
        )
        await self.runner.run(
            clear_exports(CHANNEL_EXPORTS, CHANNEL_EXPORTS_HEADER), "Remove previous environment"
        )
        env = await self.runner.run(
            f"cat >> ~/.bashrc << 'BASHEOF'\n{exports}\nBASHEOF", "Configure environment"
        )
        if not env.ok:
            return env.with_message("Failed to configure environment")

        self.runner.emit(step, "Clawdbot configured with Telegram")
        return StepResult.success(gateway_token)

    async def store_model_key(self, model_api_key: str) -> StepResult:
        export = quote(f"export ANTHROPIC_API_KEY={quote(model_api_key)}")
        result = await self.runner.run(
            f"{clear_exports(('ANTHROPIC_API_KEY',))} && echo {export} >> ~/.bashrc",
            "Store Claude API key",
        )
        if not result.ok:
            return result.with_message("Failed to store Claude API key")
        return result
