"""HTTP transport for the Ardine time-tracking and invoicing service."""

__version__ = "0.4.0"
