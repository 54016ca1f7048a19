"""Scope, role, and patient-context decisions.

Every function here is pure: it looks only at the principal it is handed and
the requirement being tested. Scope membership is an exact string match.
A granted ``patient/*.read`` does not imply ``patient/read`` or
``patient/Patient.read``; scopes are checked exactly as the identity provider
granted them.
"""
from __future__ import annotations

from typing import Iterable, Optional

from carelink.security.principal import Principal


def has_role(principal: Optional[Principal], required_roles: Iterable[str]) -> bool:
    if principal is None:
        return False
    roles = set(required_roles or ())
    return not roles or principal.role in roles


def has_scope(principal: Optional[Principal], required_scope: Optional[str]) -> bool:
    if principal is None:
        return False
    if not required_scope:
        return True
    return required_scope in principal.scopes


def has_patient_context(principal: Optional[Principal]) -> bool:
    return principal is not None and bool(principal.fhir_patient_id)


def is_authorized(
    principal: Optional[Principal],
    required_roles: Iterable[str] = (),
    required_scope: Optional[str] = None,
    require_patient_context: bool = False,
) -> bool:
    """Return True when the principal satisfies every requirement given."""
    if principal is None:
        return False
    if not has_role(principal, required_roles):
        return False
    if not has_scope(principal, required_scope):
        return False
    if require_patient_context and not has_patient_context(principal):
        return False
    return True
