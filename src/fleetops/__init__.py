"""Fleet Ops - autonomous operations agents for the Vizora signage platform."""

__version__ = "1.0.0"
