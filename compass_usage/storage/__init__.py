"""
Storage layer for Compass Usage.

Holds the usage data models and the per-card, per-month cache.
"""
