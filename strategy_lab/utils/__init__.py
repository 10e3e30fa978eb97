"""
Generic utility functions shared across modules.

Includes clock abstractions, seeded random sources, indicator math helpers,
and logging setup.
"""
