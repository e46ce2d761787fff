"""Parallel supervisor for the lunchtime simulator binary."""

__version__ = "0.1.0"
