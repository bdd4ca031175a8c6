"""
Clinical alert engine: rule evaluation, dedup/persistence and broadcast.
"""
