"""
FHIR proxy endpoints.

Each route declares its ``AccessRule``; the gateway call only happens after
the authorization chain has accepted the caller. Callers holding an upstream
SMART access token may forward it in ``X-FHIR-Access-Token``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Request

from carelink.di import get_fhir_gateway
from carelink.fhir_gateway import FhirResourceGateway, format_care_plans, format_vital_signs
from carelink.models import ObservationCreateRequest
from carelink.security.dependencies import SESSION, SMART, AccessRule, require_access
from carelink.security.principal import Principal
from carelink.utils.error_responses import success_envelope
from carelink.utils.logging_utils import log_info

router = APIRouter()


def _scoped(scope: str) -> AccessRule:
    return AccessRule(schemes=(SESSION, SMART), scope=scope)


PATIENT_READ = _scoped("patient/*.read")
OBSERVATION_READ = _scoped("observation/*.read")
OBSERVATION_WRITE = _scoped("observation/*.write")
CAREPLAN_READ = _scoped("careplan/*.read")
CAREPLAN_WRITE = _scoped("careplan/*.write")
APPOINTMENT_READ = _scoped("appointment/*.read")
MEDICATION_READ = _scoped("medicationrequest/*.read")
CONDITION_READ = _scoped("condition/*.read")

PatientId = Path(..., min_length=1, description="FHIR Patient id")
UpstreamToken = Header(None, alias="X-FHIR-Access-Token")


@router.get("/patients/search")
async def search_patients(
    name: Optional[str] = Query(None),
    identifier: Optional[str] = Query(None),
    birthdate: Optional[str] = Query(None),
    principal: Principal = Depends(require_access(PATIENT_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    bundle = await gateway.search_patients(
        {"name": name, "identifier": identifier, "birthdate": birthdate},
        access_token=upstream_token,
    )
    return success_envelope(bundle)


@router.get("/patients/{patient_id}")
async def get_patient(
    request: Request,
    patient_id: str = PatientId,
    principal: Principal = Depends(require_access(PATIENT_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    patient = await gateway.get_patient(patient_id, access_token=upstream_token)
    log_info("Patient retrieved", request=request, principal=principal.id, patient=patient_id)
    return success_envelope(patient)


@router.get("/patients/{patient_id}/observations")
async def get_observations(
    patient_id: str = PatientId,
    category: Optional[str] = Query(None, description="Observation category, e.g. vital-signs"),
    principal: Principal = Depends(require_access(OBSERVATION_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    observations = await gateway.get_observations(
        patient_id, category, access_token=upstream_token
    )
    return success_envelope(
        {"observations": observations, "vitals": format_vital_signs(observations)}
    )


@router.get("/patients/{patient_id}/care-plans")
async def get_care_plans(
    patient_id: str = PatientId,
    principal: Principal = Depends(require_access(CAREPLAN_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    care_plans = await gateway.get_care_plans(patient_id, access_token=upstream_token)
    return success_envelope(
        {"carePlans": care_plans, "formattedPlans": format_care_plans(care_plans)}
    )


@router.get("/patients/{patient_id}/appointments")
async def get_appointments(
    patient_id: str = PatientId,
    principal: Principal = Depends(require_access(APPOINTMENT_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    return success_envelope(
        await gateway.get_appointments(patient_id, access_token=upstream_token)
    )


@router.get("/patients/{patient_id}/medications")
async def get_medications(
    patient_id: str = PatientId,
    principal: Principal = Depends(require_access(MEDICATION_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    return success_envelope(
        await gateway.get_medications(patient_id, access_token=upstream_token)
    )


@router.get("/patients/{patient_id}/conditions")
async def get_conditions(
    patient_id: str = PatientId,
    principal: Principal = Depends(require_access(CONDITION_READ)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    return success_envelope(
        await gateway.get_conditions(patient_id, access_token=upstream_token)
    )


@router.post("/observations", status_code=201)
async def create_observation(
    request: Request,
    payload: ObservationCreateRequest,
    principal: Principal = Depends(require_access(OBSERVATION_WRITE)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    resource = payload.to_fhir(datetime.now(timezone.utc).isoformat())
    created = await gateway.create_observation(resource, access_token=upstream_token)
    log_info("Observation created", request=request, principal=principal.id)
    return success_envelope(created)


@router.put("/care-plans/{care_plan_id}")
async def update_care_plan(
    request: Request,
    care_plan_id: str = Path(..., min_length=1),
    care_plan: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_access(CAREPLAN_WRITE)),
    gateway: FhirResourceGateway = Depends(get_fhir_gateway),
    upstream_token: Optional[str] = UpstreamToken,
):
    updated = await gateway.update_care_plan(
        care_plan_id, care_plan, access_token=upstream_token
    )
    log_info("Care plan updated", request=request, principal=principal.id, care_plan=care_plan_id)
    return success_envelope(updated)


@router.get("/capabilities")
async def get_capabilities(gateway: FhirResourceGateway = Depends(get_fhir_gateway)):
    return success_envelope(await gateway.get_capabilities())
