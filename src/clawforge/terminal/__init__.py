"""Interactive remote sessions built on the executor abstraction."""

from clawforge.terminal.sessions import RemoteSession, SessionRegistry

__all__ = ["RemoteSession", "SessionRegistry"]
