"""AppForge - generate, version and blue-green deploy containerized apps."""

__version__ = "0.4.0"
