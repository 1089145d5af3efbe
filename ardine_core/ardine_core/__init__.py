"""Authorization-and-query core for the Ardine time-tracking service."""

__version__ = "0.4.0"
