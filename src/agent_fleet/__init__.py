"""agent-fleet: run coding agents across many repositories, one session per repo."""

__version__ = "0.1.0"
