"""orchestrate - launch, track, continue and retry agent CLI runs."""

__version__ = "0.1.0"
