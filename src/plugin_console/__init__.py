"""Plugin Console: durable job queue and execution pipeline for game-server plugins."""

__version__ = "0.1.0"
