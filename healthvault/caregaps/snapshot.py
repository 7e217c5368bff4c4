"""Evaluator input assembled from a patient's stored records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from healthvault.caregaps.catalog import MEASURE_CATALOG, MeasureDefinition
from healthvault.caregaps.evaluator import CareGap, evaluate
from healthvault.schemas.resources import (
    ConditionResource,
    FhirResource,
    ImmunizationResource,
    ObservationResource,
    PatientResource,
    parse_resource,
)

logger = logging.getLogger(__name__)


@dataclass
class PatientSnapshot:
    patient_id: str
    patient: PatientResource | None = None
    conditions: list[ConditionResource] = field(default_factory=list)
    observations: list[ObservationResource] = field(default_factory=list)
    immunizations: list[ImmunizationResource] = field(default_factory=list)

    def evaluate(
        self,
        measure_catalog: tuple[MeasureDefinition, ...] = MEASURE_CATALOG,
        as_of: date | None = None,
    ) -> list[CareGap]:
        return evaluate(
            self.patient,
            self.conditions,
            self.observations,
            self.immunizations,
            measure_catalog=measure_catalog,
            as_of=as_of,
        )


def typed_views(payloads: Iterable[dict[str, Any]], view: type[FhirResource]) -> list:
    """Parse stored payloads, skipping any that do not fit ``view``."""
    resources = []
    for payload in payloads:
        resource = parse_resource(payload)
        if isinstance(resource, view):
            resources.append(resource)
        else:
            logger.warning(
                "Stored %s/%s does not parse as %s; left out of evaluation",
                payload.get("resourceType"),
                payload.get("id"),
                view.__name__,
            )
    return resources
