"""HTTP gateway to the upstream FHIR server plus bundle formatting helpers."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from carelink.exceptions import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


class FhirResourceGateway:
    """Thin async client for the FHIR REST queries the dashboard needs.

    Authorization is the caller's job: the gateway forwards whatever it is
    asked for, optionally with the upstream access token of the caller.
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http_client
        self.timeout = timeout
        self.default_headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}

    def _headers(self, access_token: Optional[str]) -> Dict[str, str]:
        if not access_token:
            return dict(self.default_headers)
        return {**self.default_headers, "Authorization": f"Bearer {access_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        description: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self.http.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(access_token),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            logger.error("Timed out trying to %s at %s", description, url)
            raise UpstreamTimeout(f"Failed to {description}: FHIR server timed out") from exc
        except httpx.RequestError as exc:
            logger.error("Error trying to %s at %s: %s", description, url, exc)
            raise UpstreamUnavailable(f"Failed to {description}: {exc}") from exc

        if response.status_code >= 400:
            body = _response_body(response)
            message = _upstream_message(body) or response.reason_phrase or "request rejected"
            logger.error(
                "FHIR server rejected request to %s (%s): %s",
                description,
                response.status_code,
                message,
            )
            raise UpstreamRejected(
                f"Failed to {description}: {message}",
                upstream_status=response.status_code,
                body=body,
            )

        logger.info("Completed FHIR request to %s", description)
        return _response_body(response)

    async def get_patient(self, patient_id: str, access_token: Optional[str] = None) -> Any:
        return await self._request(
            "GET",
            f"Patient/{patient_id}",
            description=f"retrieve patient {patient_id}",
            access_token=access_token,
        )

    async def get_observations(
        self,
        patient_id: str,
        category: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        params = {"subject": f"Patient/{patient_id}"}
        if category:
            params["category"] = category
        return await self._request(
            "GET",
            "Observation",
            params=params,
            description=f"retrieve observations for patient {patient_id}",
            access_token=access_token,
        )

    async def get_care_plans(self, patient_id: str, access_token: Optional[str] = None) -> Any:
        return await self._request(
            "GET",
            "CarePlan",
            params={"subject": f"Patient/{patient_id}"},
            description=f"retrieve care plans for patient {patient_id}",
            access_token=access_token,
        )

    async def get_appointments(self, patient_id: str, access_token: Optional[str] = None) -> Any:
        return await self._request(
            "GET",
            "Appointment",
            params={"actor": f"Patient/{patient_id}"},
            description=f"retrieve appointments for patient {patient_id}",
            access_token=access_token,
        )

    async def get_medications(self, patient_id: str, access_token: Optional[str] = None) -> Any:
        return await self._request(
            "GET",
            "MedicationRequest",
            params={"subject": f"Patient/{patient_id}"},
            description=f"retrieve medications for patient {patient_id}",
            access_token=access_token,
        )

    async def get_conditions(self, patient_id: str, access_token: Optional[str] = None) -> Any:
        return await self._request(
            "GET",
            "Condition",
            params={"subject": f"Patient/{patient_id}"},
            description=f"retrieve conditions for patient {patient_id}",
            access_token=access_token,
        )

    async def search_patients(
        self,
        search_params: Optional[Dict[str, Optional[str]]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        params = {key: value for key, value in (search_params or {}).items() if value}
        return await self._request(
            "GET",
            "Patient",
            params=params,
            description="search patients",
            access_token=access_token,
        )

    async def create_observation(
        self, observation: Dict[str, Any], access_token: Optional[str] = None
    ) -> Any:
        return await self._request(
            "POST",
            "Observation",
            json=observation,
            description="create observation",
            access_token=access_token,
        )

    async def update_care_plan(
        self,
        care_plan_id: str,
        care_plan: Dict[str, Any],
        access_token: Optional[str] = None,
    ) -> Any:
        return await self._request(
            "PUT",
            f"CarePlan/{care_plan_id}",
            json=care_plan,
            description=f"update care plan {care_plan_id}",
            access_token=access_token,
        )

    async def get_capabilities(self) -> Any:
        return await self._request("GET", "metadata", description="retrieve capabilities")

    async def validate_resource(
        self,
        resource_type: str,
        resource: Dict[str, Any],
        access_token: Optional[str] = None,
    ) -> Any:
        return await self._request(
            "POST",
            f"{resource_type}/$validate",
            json=resource,
            description=f"validate {resource_type} resource",
            access_token=access_token,
        )


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _upstream_message(body: Any) -> Optional[str]:
    """Pull a readable message out of an OperationOutcome or error body."""
    if isinstance(body, dict):
        if body.get("resourceType") == "OperationOutcome":
            messages = [
                issue.get("diagnostics") or (issue.get("details") or {}).get("text")
                for issue in body.get("issue") or []
            ]
            messages = [message for message in messages if message]
            if messages:
                return "; ".join(messages)
        for key in ("message", "error_description", "error"):
            if isinstance(body.get(key), str):
                return body[key]
        return None
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return None


def _first_coding(resource: Dict[str, Any]) -> Dict[str, Any]:
    codings = (resource.get("code") or {}).get("coding") or []
    return codings[0] if codings else {}


def _entries(bundle: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(bundle, dict):
        return []
    return [entry.get("resource") or {} for entry in bundle.get("entry") or []]


def format_vital_signs(bundle: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten an Observation bundle into dashboard vital-sign rows."""
    vitals = []
    for observation in _entries(bundle):
        coding = _first_coding(observation)
        quantity = observation.get("valueQuantity") or {}
        vitals.append(
            {
                "id": observation.get("id"),
                "code": coding.get("code"),
                "display": coding.get("display"),
                "value": quantity.get("value"),
                "unit": quantity.get("unit"),
                "date": observation.get("effectiveDateTime"),
                "status": observation.get("status"),
            }
        )
    return vitals


def format_care_plans(bundle: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten a CarePlan bundle into dashboard care-plan rows."""
    plans = []
    for plan in _entries(bundle):
        goals = plan.get("goal")
        activities = plan.get("activity")
        plans.append(
            {
                "id": plan.get("id"),
                "title": plan.get("title"),
                "description": plan.get("description"),
                "status": plan.get("status"),
                "period": plan.get("period"),
                "goals": [goal.get("reference") for goal in goals] if goals is not None else None,
                "activities": (
                    [
                        {
                            "detail": activity.get("detail"),
                            "outcomeCodeableConcept": activity.get("outcomeCodeableConcept"),
                        }
                        for activity in activities
                    ]
                    if activities is not None
                    else None
                ),
            }
        )
    return plans
