"""Forward restic --json backup progress to a time-series database."""

__version__ = "0.1.0"
