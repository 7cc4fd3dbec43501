"""
Core modules for Usage Guard.

This package contains pricing, unit estimation, quota enforcement,
idempotency and usage recording.
"""
