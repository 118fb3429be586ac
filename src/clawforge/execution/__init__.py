"""Remote executors: run shell commands on a compute resource."""

from clawforge.execution.base import CommandResult, RemoteExecutor
from clawforge.execution.rpc import RpcExecutor
from clawforge.execution.sandbox import SandboxExecutor
from clawforge.execution.ssh import SSHExecutor

__all__ = [
    "CommandResult",
    "RemoteExecutor",
    "RpcExecutor",
    "SSHExecutor",
    "SandboxExecutor",
]
