"""
gatewayd - supervisor for a sandboxed agent gateway.

Restores gateway state from backup, hydrates its config from the
environment, keeps exactly one healthy gateway process running, and exposes
status, restart and session introspection over HTTP.
"""

__version__ = "0.1.0"
