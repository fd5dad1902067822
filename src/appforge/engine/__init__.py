"""Container engine capability."""

from .docker import ContainerEngine, ContainerState, DockerEngine, EngineResult

__all__ = ["ContainerEngine", "ContainerState", "DockerEngine", "EngineResult"]
