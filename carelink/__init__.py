"""
CareLink gateway: SMART-on-FHIR authorization front door for the patient dashboard.
"""

__version__ = "1.0.0"
