"""
Core modules for Claude Usage Tracker.

This package contains pricing resolution, aggregation, session block
reconstruction and the refresh orchestration loop.
"""
