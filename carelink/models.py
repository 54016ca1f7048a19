from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, description="Login name (min 3 characters)")
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=6, description="User password (min 6 characters)")
    name: str = Field(..., min_length=1, description="Display name")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        local, _, domain = v.partition('@')
        if not local or '.' not in domain or ' ' in v:
            raise ValueError('Invalid email format')
        return v.lower()

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Name must not be empty')
        return v.strip()


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class ObservationCreateRequest(BaseModel):
    """Observation payload; any further FHIR fields pass through untouched."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    subject: Dict[str, Any]
    code: Dict[str, Any]
    value_quantity: Dict[str, Any] = Field(..., alias="valueQuantity")
    status: Optional[str] = None

    def to_fhir(self, effective_date_time: str) -> Dict[str, Any]:
        resource: Dict[str, Any] = {"resourceType": "Observation", "status": "final"}
        resource.update(self.model_dump(by_alias=True, exclude_none=True))
        resource["resourceType"] = "Observation"
        resource["effectiveDateTime"] = effective_date_time
        return resource
