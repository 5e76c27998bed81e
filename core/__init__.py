"""Core module - ERP-neutral models, storage, audit and observability.

This package holds the event, transaction and audit models, the stores that
persist them, and the logging and metrics shared by every process. It is
intentionally ERP-agnostic.

ERP-specific logic (Sage X3, ...) belongs in /connectors/.
"""

__version__ = "1.0.0"
