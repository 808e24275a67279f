"""
Fortune Kernel - shared infrastructure for the fortune batch layer.

Provides:
- SQLAlchemy declarative base and engine/session management
- Injectable clock for deterministic time
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with context propagation
"""

__version__ = "0.1.0"
