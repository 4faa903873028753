"""
Core modules for AI Session Meter.

This package contains the pure computations run on every refresh cycle:
windowing, activity classification, burn rate, depletion forecasts,
staleness clamping and quota inference.
"""
