"""HealthTrack clinical case tooling."""

__version__ = "0.3.0"
