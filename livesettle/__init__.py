"""Live match state synchronization and prediction settlement engine."""

__version__ = "0.1.0"
