"""
Observability Package — Tracing

Provides:
  TracingConfig   — LangSmith initialisation
  traced          — decorator for instrumenting async pipeline stages

Usage::

    # At app startup (in main.py create_app):
    from app.observability.tracing import TracingConfig
    TracingConfig.init()
"""

from app.observability.tracing import TracingConfig, traced

__all__ = ["TracingConfig", "traced"]
