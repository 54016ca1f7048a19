"""The authenticated actor attached to each authorized request."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

ROLES = ("patient", "provider", "admin")


@dataclass(frozen=True)
class Principal:
    """Identity and grants reconstructed from a session token or ID token."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "patient"
    fhir_patient_id: Optional[str] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    username: Optional[str] = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role}")
        if not isinstance(self.scopes, frozenset):
            object.__setattr__(self, "scopes", frozenset(self.scopes or ()))

    def to_claims(self) -> Dict[str, Any]:
        """Serialize into JWT claims (``sub`` carries the identifier)."""
        claims: Dict[str, Any] = {
            "sub": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "fhirPatientId": self.fhir_patient_id,
            "scopes": sorted(self.scopes),
        }
        if self.username:
            claims["username"] = self.username
        return claims

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Principal":
        subject = claims.get("sub")
        if not subject:
            raise ValueError("Token is missing the subject claim")
        scopes = claims.get("scopes") or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            id=str(subject),
            name=claims.get("name"),
            email=claims.get("email"),
            role=claims.get("role") or "patient",
            fhir_patient_id=claims.get("fhirPatientId"),
            scopes=frozenset(scopes),
            username=claims.get("username"),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Shape returned to API clients as ``user``."""
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "fhirPatientId": self.fhir_patient_id,
            "scopes": sorted(self.scopes),
        }
        if self.username:
            data["username"] = self.username
        return data
