"""Health checks and blue-green deployment."""

from .blue_green import BlueGreenDeployer, DeploymentAttempt, DeployState
from .health import HealthChecker, HealthResult

__all__ = [
    "BlueGreenDeployer",
    "DeploymentAttempt",
    "DeployState",
    "HealthChecker",
    "HealthResult",
]
