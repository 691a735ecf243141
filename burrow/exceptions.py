"""Errors raised by the relay and agent."""


class BurrowError(Exception):
    """Base class for all Burrow errors."""


class TunnelNotFoundError(BurrowError):
    """No tunnel is registered under the requested name."""

    def __init__(self, name: str, available_tunnels: list[str]) -> None:
        super().__init__(f"No tunnel registered with name '{name}'")
        self.name = name
        self.available_tunnels = available_tunnels


class TunnelUnavailableError(BurrowError):
    """The tunnel connection could not carry the request envelope."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Tunnel '{name}' is unavailable: {reason}")
        self.name = name
        self.reason = reason


class InvalidTunnelNameError(BurrowError):
    """A registration used a name that cannot be routed."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid tunnel name '{name}'")
        self.name = name


class RegistrationRejectedError(BurrowError):
    """The relay refused the agent's registration."""
