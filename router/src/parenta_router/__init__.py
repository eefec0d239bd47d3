"""Parenta router service: captive-portal access control with daily quotas."""

__version__ = "1.0.0"
