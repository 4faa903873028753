"""
Data ingestion for AI Session Meter.

Turns on-disk usage logs into sorted, deduplicated usage events.
"""
