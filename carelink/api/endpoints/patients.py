"""
Patient directory backed by the demo roster.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from carelink.exceptions import CareLinkError
from carelink.security.dependencies import AccessRule, require_access
from carelink.security.principal import Principal
from carelink.utils.error_responses import success_envelope

router = APIRouter()

DEMO_PATIENTS: List[Dict[str, Any]] = [
    {
        "id": "1",
        "fhirPatientId": "example-patient-123",
        "name": "John Doe",
        "email": "john.doe@example.com",
        "phone": "+1-555-0123",
        "dateOfBirth": "1985-03-15",
        "gender": "male",
        "address": "123 Main St, Anytown, USA",
        "emergencyContact": {"name": "Jane Doe", "relationship": "Spouse", "phone": "+1-555-0124"},
    },
    {
        "id": "2",
        "fhirPatientId": "example-patient-456",
        "name": "Jane Smith",
        "email": "jane.smith@example.com",
        "phone": "+1-555-0125",
        "dateOfBirth": "1990-07-22",
        "gender": "female",
        "address": "456 Oak Ave, Somewhere, USA",
        "emergencyContact": {"name": "Bob Smith", "relationship": "Brother", "phone": "+1-555-0126"},
    },
]


class PatientNotFound(CareLinkError):
    kind = "NotFound"
    status_code = 404


@router.get("/patients")
async def list_patients(
    principal: Principal = Depends(require_access(AccessRule(roles=("admin", "provider")))),
):
    """List every patient (providers and administrators only)."""
    return success_envelope(DEMO_PATIENTS)


@router.get("/patients/me")
async def my_record(
    principal: Principal = Depends(require_access(AccessRule(patient_context=True))),
):
    """Return the record bound to the caller's FHIR patient id."""
    for patient in DEMO_PATIENTS:
        if patient["fhirPatientId"] == principal.fhir_patient_id:
            return success_envelope(patient)
    raise PatientNotFound("No patient record is linked to this account")
