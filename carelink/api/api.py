from fastapi import APIRouter
from .endpoints import auth, fhir, health, patients

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
api_router.include_router(fhir.router, prefix="/fhir", tags=["FHIR"])
api_router.include_router(patients.router, tags=["Patients"])
api_router.include_router(health.router, tags=["Health"])
