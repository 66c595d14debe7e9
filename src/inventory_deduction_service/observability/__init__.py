"""Tracing, metrics and structured logging for the deduction pipeline.

Metric helpers live in ``observability.metrics`` and are imported from there
by the services that record them.
"""

from inventory_deduction_service.observability.config import configure_logging, setup_observability
from inventory_deduction_service.observability.decorators import traced

__all__ = ["configure_logging", "setup_observability", "traced"]
