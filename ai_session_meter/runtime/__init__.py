"""Refresh scheduling for the live usage snapshot."""
