"""
Usage API access for AI Session Meter.

Polls the externally tracked utilization percentages.
"""
