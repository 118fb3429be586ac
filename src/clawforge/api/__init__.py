"""HTTP API for starting and observing provisioning runs."""

from clawforge.api.app import create_app

__all__ = ["create_app"]
