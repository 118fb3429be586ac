"""clawforge CLI.

Commands for creating the database, running provisioning from a terminal and
poking at provisioned resources (status, gateway, exec, teardown).
"""

from clawforge.cli.main import app, main

__all__ = ["app", "main"]
