"""Configuration for the pm-node agent."""

from dataclasses import dataclass
import os


@dataclass
class AgentConfig:
    """Configuration for the pm-node agent.

    Matches the CLI arguments:
    - HOST PORT: address of the pm master
    - --ping-interval: seconds between heartbeats / reconnect attempts
    - --quiet / --verbose: logging verbosity
    """

    # Required: where the master listens
    server_host: str
    server_port: int

    # Heartbeat / reconnect timing
    ping: bool = True
    ping_interval: float = 30.0  # seconds
    latency_warning_ms: int = 500

    # Agent behavior
    quiet: bool = False
    verbose: bool = False

    @property
    def server_address(self) -> str:
        """host:port of the master, for log messages."""
        return f"{self.server_host}:{self.server_port}"

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Create config from environment variables.

        Environment variables:
        - PM_NODE_HOST: Master host
        - PM_NODE_PORT: Master port
        - PM_NODE_PING_INTERVAL: Heartbeat interval in seconds
        - PM_NODE_VERBOSE: Enable debug logging
        """
        return cls(
            server_host=os.environ.get("PM_NODE_HOST", ""),
            server_port=int(os.environ.get("PM_NODE_PORT", "0")),
            ping_interval=float(os.environ.get("PM_NODE_PING_INTERVAL", "30")),
            verbose=os.environ.get("PM_NODE_VERBOSE", "").lower() in ("1", "true", "yes"),
        )

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.server_host:
            errors.append("server_host is required")

        if self.server_port < 1 or self.server_port > 65535:
            errors.append(f"server_port must be 1-65535, got: {self.server_port}")

        if self.ping_interval <= 0:
            errors.append(f"ping_interval must be positive, got: {self.ping_interval}")

        if self.quiet and self.verbose:
            errors.append("quiet and verbose are mutually exclusive")

        return errors
