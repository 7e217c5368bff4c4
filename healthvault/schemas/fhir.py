"""
FHIR-inspired JSON schemas used as the ingest contract for migrated resources.

Pragmatic subset: each schema pins the resource type, requires the logical
id the idempotency key is built from, and requires the patient reference for
the kinds that carry one. Additional properties are allowed because the
payload is stored opaquely.
"""

from __future__ import annotations

from typing import Any

from healthvault.schemas.resources import ResourceType

_REFERENCE: dict = {
    "type": "object",
    "required": ["reference"],
    "properties": {"reference": {"type": "string", "minLength": 1}},
}

_CODEABLE_CONCEPT: dict = {
    "type": "object",
    "description": "LOINC, SNOMED, ICD-10 or CVX coded value.",
    "properties": {
        "coding": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "system": {"type": "string"},
                    "code": {"type": "string"},
                    "display": {"type": "string"},
                },
            },
        },
        "text": {"type": "string"},
    },
}


def _resource_schema(
    resource_type: ResourceType,
    *,
    required: tuple[str, ...] = (),
    properties: dict[str, Any] | None = None,
) -> dict:
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": f"FHIR {resource_type.value} (ingest subset)",
        "type": "object",
        "required": ["resourceType", "id", *required],
        "properties": {
            "resourceType": {"type": "string", "const": resource_type.value},
            "id": {
                "type": "string",
                "minLength": 1,
                "description": "Logical id at the source; part of the idempotency key.",
            },
            **(properties or {}),
        },
        "additionalProperties": True,
    }


FHIR_PATIENT_SCHEMA = _resource_schema(
    ResourceType.PATIENT,
    properties={
        "birthDate": {
            "type": "string",
            "pattern": "^\\d{4}(-\\d{2}(-\\d{2})?)?$",
            "description": "FHIR date (YYYY, YYYY-MM or YYYY-MM-DD).",
        },
        "gender": {
            "type": "string",
            "enum": ["male", "female", "other", "unknown"],
            "description": "Administrative gender per FHIR value set.",
        },
    },
)

FHIR_CONDITION_SCHEMA = _resource_schema(
    ResourceType.CONDITION,
    required=("subject",),
    properties={
        "subject": _REFERENCE,
        "code": _CODEABLE_CONCEPT,
        "clinicalStatus": _CODEABLE_CONCEPT,
        "onsetDateTime": {"type": "string"},
    },
)

FHIR_OBSERVATION_SCHEMA = _resource_schema(
    ResourceType.OBSERVATION,
    required=("subject", "code"),
    properties={
        "subject": _REFERENCE,
        "code": _CODEABLE_CONCEPT,
        "effectiveDateTime": {"type": "string"},
        "valueQuantity": {
            "type": "object",
            "properties": {
                "value": {"type": "number"},
                "unit": {"type": "string"},
            },
        },
    },
)

FHIR_MEDICATION_REQUEST_SCHEMA = _resource_schema(
    ResourceType.MEDICATION_REQUEST,
    required=("subject",),
    properties={
        "subject": _REFERENCE,
        "medicationCodeableConcept": _CODEABLE_CONCEPT,
    },
)

FHIR_ALLERGY_INTOLERANCE_SCHEMA = _resource_schema(
    ResourceType.ALLERGY_INTOLERANCE,
    required=("patient",),
    properties={"patient": _REFERENCE, "code": _CODEABLE_CONCEPT},
)

FHIR_IMMUNIZATION_SCHEMA = _resource_schema(
    ResourceType.IMMUNIZATION,
    required=("patient", "vaccineCode"),
    properties={
        "patient": _REFERENCE,
        "vaccineCode": _CODEABLE_CONCEPT,
        "occurrenceDateTime": {"type": "string"},
    },
)

FHIR_COVERAGE_SCHEMA = _resource_schema(
    ResourceType.COVERAGE,
    required=("beneficiary",),
    properties={"beneficiary": _REFERENCE},
)

FHIR_CLAIM_SCHEMA = _resource_schema(
    ResourceType.CLAIM,
    required=("patient",),
    properties={"patient": _REFERENCE},
)

FHIR_EXPLANATION_OF_BENEFIT_SCHEMA = _resource_schema(
    ResourceType.EXPLANATION_OF_BENEFIT,
    required=("patient",),
    properties={"patient": _REFERENCE},
)


FHIR_SCHEMAS: dict[ResourceType, dict] = {
    ResourceType.PATIENT: FHIR_PATIENT_SCHEMA,
    ResourceType.CONDITION: FHIR_CONDITION_SCHEMA,
    ResourceType.OBSERVATION: FHIR_OBSERVATION_SCHEMA,
    ResourceType.MEDICATION_REQUEST: FHIR_MEDICATION_REQUEST_SCHEMA,
    ResourceType.ALLERGY_INTOLERANCE: FHIR_ALLERGY_INTOLERANCE_SCHEMA,
    ResourceType.IMMUNIZATION: FHIR_IMMUNIZATION_SCHEMA,
    ResourceType.COVERAGE: FHIR_COVERAGE_SCHEMA,
    ResourceType.CLAIM: FHIR_CLAIM_SCHEMA,
    ResourceType.EXPLANATION_OF_BENEFIT: FHIR_EXPLANATION_OF_BENEFIT_SCHEMA,
}
