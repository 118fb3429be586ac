"""Provisioning engine: step runner, installers, gateway and runtime bootstrap.

The orchestrator lives in ``clawforge.provisioning.orchestrator`` and is not
re-exported here because providers depend on this package.
"""

from clawforge.provisioning.cancel import CancelToken
from clawforge.provisioning.events import EventChannel, ProgressEvent
from clawforge.provisioning.gateway import GatewayStatus, GatewayVerifier
from clawforge.provisioning.installer import BackgroundInstaller, InstallOutcome, PackageInstaller
from clawforge.provisioning.runtime import ChannelConfig, RepositoryRef, RuntimeBootstrap
from clawforge.provisioning.steps import StepResult, StepRunner

__all__ = [
    "BackgroundInstaller",
    "CancelToken",
    "ChannelConfig",
    "EventChannel",
    "GatewayStatus",
    "GatewayVerifier",
    "InstallOutcome",
    "PackageInstaller",
    "ProgressEvent",
    "RepositoryRef",
    "RuntimeBootstrap",
    "StepResult",
    "StepRunner",
]
