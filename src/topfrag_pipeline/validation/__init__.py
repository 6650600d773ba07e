"""
Validation of event batches posted by the parser service.
"""

from .event_validator import EventValidationError, UnknownEventError, validate_batch

__all__ = ["EventValidationError", "UnknownEventError", "validate_batch"]
