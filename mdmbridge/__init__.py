"""Migrate MDM check-in state to a remote MDM service and proxy commands to it."""

__version__ = "0.3.0"
