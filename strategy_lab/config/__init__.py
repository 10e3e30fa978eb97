"""
Configuration loading and validation.

Typed, frozen settings objects for analytics, search, and logging, built from
STRATEGY_LAB_* environment variables with upfront validation.
"""
