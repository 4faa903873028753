"""
AI Session Meter.

Rolling usage windows, burn rate and limit forecasts for metered AI assistants.
"""

__version__ = "0.1.0"
