"""Compute backends and the factory that selects one."""

from __future__ import annotations

from typing import Any

from clawforge.db.models import Backend
from clawforge.providers.base import ComputeHandle, ComputeProvider
from clawforge.providers.aws import AWSProvider
from clawforge.providers.e2b import E2BProvider
from clawforge.providers.orgo import OrgoClient, OrgoProvider


def get_provider(backend: Backend | str, **options: Any) -> ComputeProvider:
    """Build the provider for ``backend``; options override settings defaults."""
    backend = Backend(backend)
    if backend is Backend.ORGO:
        return OrgoProvider(**options)
    if backend is Backend.AWS:
        return AWSProvider(**options)
    return E2BProvider(**options)


__all__ = [
    "AWSProvider",
    "ComputeHandle",
    "ComputeProvider",
    "E2BProvider",
    "OrgoClient",
    "OrgoProvider",
    "get_provider",
]
