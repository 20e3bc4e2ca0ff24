"""Maraum chat API.

Modules:
- settings: environment-backed configuration and per-channel generation settings
- errors: error taxonomy shared by the store, gateway and HTTP layer
- store: SQLAlchemy models plus the invariant, idempotency and lifecycle rules
- gateway: retrying, timeout-bounded text generation with completion-marker handling
- orchestrator: one submission end-to-end
- main: FastAPI application
"""

__version__ = "0.1.0"
