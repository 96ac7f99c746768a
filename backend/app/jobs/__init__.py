"""
jobs — Recurring background work.

Sub-modules:
    radius_expansion — Hourly widening of ACTIVE report radii
"""
