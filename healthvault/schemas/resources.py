"""
Typed views over FHIR R4 resources.

Resources arrive as loosely structured JSON. Each kind gets a pydantic model
that names the handful of fields migration and care-gap evaluation read;
everything else is kept as opaque extra data and written back out with the
payload.
"""

from __future__ import annotations

import copy
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any

from dateutil.parser import isoparse
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

logger = logging.getLogger(__name__)


class ResourceType(str, Enum):
    PATIENT = "Patient"
    CONDITION = "Condition"
    OBSERVATION = "Observation"
    MEDICATION_REQUEST = "MedicationRequest"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"
    IMMUNIZATION = "Immunization"
    COVERAGE = "Coverage"
    CLAIM = "Claim"
    EXPLANATION_OF_BENEFIT = "ExplanationOfBenefit"

    @property
    def collection_key(self) -> str:
        """Key used in migration counts and error maps, e.g. ``conditions``."""
        return _COLLECTION_KEYS[self]

    @property
    def patient_search_param(self) -> str:
        """FHIR search parameter that scopes this type to one patient."""
        return "beneficiary" if self is ResourceType.COVERAGE else "patient"

    @classmethod
    def from_key(cls, value: str) -> ResourceType:
        """Accept either the FHIR name (``Condition``) or the collection key (``conditions``)."""
        for member in cls:
            if value in (member.value, member.collection_key):
                return member
        raise ValueError(f"Unknown resource type: {value}")


_COLLECTION_KEYS = {
    ResourceType.PATIENT: "patients",
    ResourceType.CONDITION: "conditions",
    ResourceType.OBSERVATION: "observations",
    ResourceType.MEDICATION_REQUEST: "medications",
    ResourceType.ALLERGY_INTOLERANCE: "allergies",
    ResourceType.IMMUNIZATION: "immunizations",
    ResourceType.COVERAGE: "coverages",
    ResourceType.CLAIM: "claims",
    ResourceType.EXPLANATION_OF_BENEFIT: "explanationOfBenefits",
}


def fhir_date(value: Any) -> date | None:
    """
    Parse a FHIR date/dateTime into a calendar date.

    Accepts full timestamps (``2021-03-04T10:00:00Z``), dates and the partial
    forms FHIR allows (``2021-03``, ``2021``). Anything unparseable is None.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    try:
        if len(text) == 4:
            return date(int(text), 1, 1)
        if len(text) == 7:
            return date(int(text[:4]), int(text[5:7]), 1)
        if len(text) == 10:
            return date.fromisoformat(text)
        return isoparse(text).date()
    except (ValueError, OverflowError):
        return None


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class _Element(BaseModel):
    model_config = ConfigDict(extra="allow")


class Coding(_Element):
    system: str | None = None
    code: str | None = None
    display: str | None = None


class CodeableConcept(_Element):
    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None


class Reference(_Element):
    reference: str | None = None
    display: str | None = None


class Period(_Element):
    start: str | None = None
    end: str | None = None


class Quantity(_Element):
    value: float | None = None
    unit: str | None = None


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class FhirResource(_Element):
    """Any FHIR resource. Unknown fields ride along untouched."""

    resourceType: str
    id: str | None = None

    _source: dict[str, Any] | None = PrivateAttr(default=None)

    def payload(self) -> dict[str, Any]:
        """
        The JSON document to persist. A view built by ``parse_resource`` returns
        the source document unchanged; one built directly dumps the fields set.
        """
        if self._source is not None:
            return copy.deepcopy(self._source)
        return self.model_dump(mode="json", exclude_unset=True)

    def patient_id(self) -> str | None:
        """Logical id of the patient this resource belongs to."""
        if self.resourceType == ResourceType.PATIENT.value:
            return self.id
        extra = self.model_extra or {}
        for field_name in ("subject", "patient", "beneficiary"):
            ref = getattr(self, field_name, None)
            if ref is None:
                ref = extra.get(field_name)
            if isinstance(ref, Reference):
                ref = ref.reference
            elif isinstance(ref, dict):
                ref = ref.get("reference")
            if isinstance(ref, str) and ref:
                return _referenced_id(ref)
        return None


def _referenced_id(reference: str) -> str:
    """
    Logical id from a literal reference: ``Patient/123``,
    ``https://host/fhir/Patient/123`` and ``Patient/123/_history/2`` all give ``123``.
    """
    parts = reference.rstrip("/").split("/")
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    for i in range(len(parts) - 2, -1, -1):
        if parts[i] == ResourceType.PATIENT.value:
            return parts[i + 1]
    return parts[-1] if parts else reference


class PatientResource(FhirResource):
    birthDate: str | None = None
    gender: str | None = None

    @property
    def birth_date(self) -> date | None:
        return fhir_date(self.birthDate)


class ConditionResource(FhirResource):
    subject: Reference | None = None
    code: CodeableConcept | None = None
    clinicalStatus: CodeableConcept | None = None
    onsetDateTime: str | None = None
    recordedDate: str | None = None

    @property
    def clinical_date(self) -> date | None:
        return fhir_date(self.onsetDateTime) or fhir_date(self.recordedDate)

    @property
    def is_active(self) -> bool:
        # A condition without a clinical status is treated as current.
        if self.clinicalStatus is None or not self.clinicalStatus.coding:
            return True
        return any(
            c.code in ("active", "recurrence", "relapse") for c in self.clinicalStatus.coding
        )


class ObservationResource(FhirResource):
    subject: Reference | None = None
    status: str | None = None
    code: CodeableConcept | None = None
    effectiveDateTime: str | None = None
    effectivePeriod: Period | None = None
    issued: str | None = None
    valueQuantity: Quantity | None = None
    valueString: str | None = None

    @property
    def clinical_date(self) -> date | None:
        start = self.effectivePeriod.start if self.effectivePeriod else None
        return (
            fhir_date(self.effectiveDateTime)
            or fhir_date(start)
            or fhir_date(self.issued)
        )

    @property
    def numeric_value(self) -> float | None:
        if self.valueQuantity is not None and self.valueQuantity.value is not None:
            return self.valueQuantity.value
        if self.valueString:
            try:
                return float(self.valueString)
            except ValueError:
                return None
        return None


class ImmunizationResource(FhirResource):
    patient: Reference | None = None
    status: str | None = None
    vaccineCode: CodeableConcept | None = None
    occurrenceDateTime: str | None = None

    @property
    def code(self) -> CodeableConcept | None:
        return self.vaccineCode

    @property
    def clinical_date(self) -> date | None:
        return fhir_date(self.occurrenceDateTime)


class MedicationRequestResource(FhirResource):
    subject: Reference | None = None
    status: str | None = None
    medicationCodeableConcept: CodeableConcept | None = None
    authoredOn: str | None = None


class AllergyIntoleranceResource(FhirResource):
    patient: Reference | None = None
    code: CodeableConcept | None = None
    criticality: str | None = None


class CoverageResource(FhirResource):
    beneficiary: Reference | None = None
    status: str | None = None


class ClaimResource(FhirResource):
    patient: Reference | None = None
    status: str | None = None


class ExplanationOfBenefitResource(FhirResource):
    patient: Reference | None = None
    status: str | None = None


RESOURCE_VIEWS: dict[ResourceType, type[FhirResource]] = {
    ResourceType.PATIENT: PatientResource,
    ResourceType.CONDITION: ConditionResource,
    ResourceType.OBSERVATION: ObservationResource,
    ResourceType.MEDICATION_REQUEST: MedicationRequestResource,
    ResourceType.ALLERGY_INTOLERANCE: AllergyIntoleranceResource,
    ResourceType.IMMUNIZATION: ImmunizationResource,
    ResourceType.COVERAGE: CoverageResource,
    ResourceType.CLAIM: ClaimResource,
    ResourceType.EXPLANATION_OF_BENEFIT: ExplanationOfBenefitResource,
}


def parse_resource(payload: dict[str, Any]) -> FhirResource:
    """
    Build the typed view for a raw payload.

    A payload whose known fields do not fit the typed model (e.g. a string
    where a Quantity is expected) still parses as a plain FhirResource so the
    document is never lost; it just exposes no typed attributes.
    """
    try:
        view = RESOURCE_VIEWS[ResourceType(payload.get("resourceType"))]
    except ValueError:
        view = FhirResource
    try:
        resource = view.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Falling back to untyped view for %s/%s: %s",
                     payload.get("resourceType"), payload.get("id"), exc)
        resource = FhirResource.model_validate(payload)
    resource._source = copy.deepcopy(payload)
    return resource
