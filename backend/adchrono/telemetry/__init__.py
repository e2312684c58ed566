"""
Telemetry Module
================

Observability for the adchrono API and worker processes.

Components:
- sentry.py: Error tracking

Usage:
    from adchrono.telemetry import init_sentry, capture_exception
"""

from adchrono.telemetry.sentry import capture_exception, init_sentry

__all__ = [
    "init_sentry",
    "capture_exception",
]
