"""
Principal model and access policy.
"""

from .principal import Principal
from .policy import has_patient_context, has_role, has_scope, is_authorized

__all__ = [
    "Principal",
    "has_patient_context",
    "has_role",
    "has_scope",
    "is_authorized",
]
