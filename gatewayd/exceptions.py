"""
Error types raised by the supervisor core.

The control API maps each of these to an HTTP status; MalformedCliOutput and
ConfigParseFailure never leave their modules.
"""


class GatewaydError(Exception):
    """Base class for supervisor errors."""

    status_code = 500


class Unauthorized(GatewaydError):
    """Restart requested with a missing or wrong token."""

    status_code = 401


class GatewayLaunchFailed(GatewaydError):
    """The gateway process could not be started or died during startup."""

    status_code = 500


class RestartInProgress(GatewaydError):
    """A restart is already running for this sandbox."""

    status_code = 409


class SessionNotFound(GatewaydError):
    """The session key is not present in the gateway's session index."""

    status_code = 404

    def __init__(self, key: str):
        super().__init__("Session not found")
        self.key = key


class MalformedCliOutput(GatewaydError):
    """Gateway CLI output could not be parsed as JSON."""

    def __init__(self, raw: str):
        super().__init__("Could not parse gateway CLI output")
        self.raw = raw


class ConfigParseFailure(GatewaydError):
    """The persisted gateway config is not a JSON object."""
