"""
Care-gap evaluator.

Scores a patient's aggregated conditions, observations and immunizations
against each measure definition:

1. Eligibility - age as of the evaluation date, gender, required diagnoses
2. Exclusion   - a documented exclusion makes the measure not applicable
3. Evidence    - matching records inside each rule's lookback window
4. Status      - satisfied with evidence, otherwise due with a due date
5. Priority    - the measure default, raised to high when overdue or when an
                 active related condition makes the gap more consequential

The evaluator is pure: the same inputs and ``as_of`` always give the same
gaps, and missing or malformed clinical data never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Sequence

from dateutil.relativedelta import relativedelta

from healthvault.caregaps.catalog import (
    MEASURE_CATALOG,
    CodeSet,
    EvidenceRule,
    EvidenceSource,
    GapStatus,
    MeasureDefinition,
    Priority,
)
from healthvault.schemas.resources import (
    ConditionResource,
    FhirResource,
    ImmunizationResource,
    ObservationResource,
    PatientResource,
    parse_resource,
)

logger = logging.getLogger(__name__)

AGE_INELIGIBLE = "age ineligible"
GENDER_INELIGIBLE = "gender ineligible"
AGE_UNKNOWN = "age unknown"
CONDITION_INELIGIBLE = "condition ineligible"


@dataclass(frozen=True)
class CareGap:
    measure_id: str
    title: str
    description: str
    category: str
    status: GapStatus
    priority: Priority
    recommended_action: str
    due_date: date | None = None
    last_performed_date: date | None = None
    reason: str | None = None


@dataclass(frozen=True)
class _Match:
    on: date
    rule: EvidenceRule
    value: float | None


def age_on(birth_date: date, as_of: date) -> int:
    """Whole years lived as of ``as_of``; the birthday itself counts."""
    return as_of.year - birth_date.year - ((as_of.month, as_of.day) < (birth_date.month, birth_date.day))


def evaluate(
    patient: PatientResource | dict[str, Any] | None,
    conditions: Iterable[ConditionResource | dict[str, Any]],
    observations: Iterable[ObservationResource | dict[str, Any]],
    immunizations: Iterable[ImmunizationResource | dict[str, Any]],
    measure_catalog: Sequence[MeasureDefinition] = MEASURE_CATALOG,
    as_of: date | None = None,
) -> list[CareGap]:
    """Evaluate every measure in catalog order."""
    as_of = as_of or date.today()
    patient_view = _coerce_one(patient, PatientResource)
    records = {
        EvidenceSource.CONDITION: _coerce(conditions, ConditionResource),
        EvidenceSource.OBSERVATION: _coerce(observations, ObservationResource),
        EvidenceSource.IMMUNIZATION: _coerce(immunizations, ImmunizationResource),
    }
    return [_evaluate_measure(measure, patient_view, records, as_of) for measure in measure_catalog]


def _evaluate_measure(
    measure: MeasureDefinition,
    patient: PatientResource | None,
    records: dict[EvidenceSource, list],
    as_of: date,
) -> CareGap:
    conditions: list[ConditionResource] = records[EvidenceSource.CONDITION]
    birth_date = patient.birth_date if patient is not None else None

    # 1. eligibility
    min_age = measure.min_age
    if measure.risk_min_age is not None and _matching_conditions(conditions, measure.risk_conditions):
        min_age = measure.risk_min_age if min_age is None else min(min_age, measure.risk_min_age)
    if min_age is not None or measure.max_age is not None:
        if birth_date is None or birth_date > as_of:
            return _not_applicable(measure, AGE_UNKNOWN)
        age = age_on(birth_date, as_of)
        if (min_age is not None and age < min_age) or (
            measure.max_age is not None and age > measure.max_age
        ):
            return _not_applicable(measure, AGE_INELIGIBLE)
    if measure.gender is not None:
        gender = (patient.gender or "").lower() if patient is not None else ""
        if gender != measure.gender:
            return _not_applicable(measure, GENDER_INELIGIBLE)
    qualifying = _matching_conditions(conditions, measure.required_conditions)
    if measure.required_conditions and not qualifying:
        return _not_applicable(measure, CONDITION_INELIGIBLE)

    # 2. exclusion, checked before anything can default to due
    if measure.exclusions and _matching_conditions(conditions, measure.exclusions):
        return _not_applicable(measure, measure.exclusion_reason)

    # 3. evidence
    in_window: list[_Match] = []
    prior: list[_Match] = []
    for rule in measure.evidence:
        matches = _evidence_matches(rule, records[rule.source], as_of)
        cutoff = as_of - relativedelta(months=rule.lookback_months)
        window = [m for m in matches if m.on > cutoff]
        if rule.max_value is not None and window:
            # only the latest result speaks to current control
            window = window[:1]
        in_window.extend(window)
        prior.extend(m for m in matches if m.on <= cutoff)

    satisfying = [m for m in in_window if _within_ceiling(m)]
    if satisfying:
        latest = max(m.on for m in satisfying)
        return CareGap(
            measure_id=measure.measure_id,
            title=measure.title,
            description=f"{measure.title} is up to date. {measure.description}",
            category=measure.category.value,
            status=GapStatus.SATISFIED,
            priority=Priority.NONE,
            recommended_action=measure.satisfied_action,
            last_performed_date=latest,
        )

    # 4. due
    last_performed = max((m.on for m in in_window + prior), default=None)
    if in_window:
        # a recent result exists but is out of range: act now
        due_date = as_of
        latest = in_window[0]
        if latest.value is None:
            message = f"Your most recent result has no value to compare with {latest.rule.max_value:g}"
        else:
            message = f"Your most recent result ({latest.value:g}) is above the target of {latest.rule.max_value:g}"
    elif prior:
        due_date = max(m.on + relativedelta(months=m.rule.lookback_months) for m in prior)
        message = _time_since_message(last_performed, as_of, measure.evidence_label)
    else:
        due_date = _eligibility_start(measure, min_age, birth_date, qualifying, as_of)
        message = f"We don't see any record of a {measure.evidence_label}"

    # 5. priority
    priority = measure.default_priority
    if measure.escalate_when_overdue and due_date < as_of:
        priority = Priority.HIGH
    elif any(c.is_active for c in _matching_conditions(conditions, measure.escalation_conditions)):
        priority = Priority.HIGH

    return CareGap(
        measure_id=measure.measure_id,
        title=measure.title,
        description=f"{message}. {measure.description}",
        category=measure.category.value,
        status=GapStatus.DUE,
        priority=priority,
        recommended_action=measure.recommended_action,
        due_date=due_date,
        last_performed_date=last_performed,
    )


def _not_applicable(measure: MeasureDefinition, reason: str) -> CareGap:
    return CareGap(
        measure_id=measure.measure_id,
        title=measure.title,
        description=measure.description,
        category=measure.category.value,
        status=GapStatus.NOT_APPLICABLE,
        priority=Priority.NONE,
        recommended_action=measure.not_applicable_action,
        reason=reason,
    )


def _within_ceiling(match: _Match) -> bool:
    if match.rule.max_value is None:
        return True
    return match.value is not None and match.value <= match.rule.max_value


def _matching_conditions(
    conditions: Sequence[ConditionResource], code_sets: Sequence[CodeSet]
) -> list[ConditionResource]:
    if not code_sets:
        return []
    return [c for c in conditions if any(cs.matches(c.code) for cs in code_sets)]


def _evidence_matches(rule: EvidenceRule, resources: Sequence[Any], as_of: date) -> list[_Match]:
    """Dated matches for a rule, newest first; future-dated records are ignored."""
    matches = []
    for resource in resources:
        on = resource.clinical_date
        if on is None or on > as_of:
            continue
        if not any(cs.matches(resource.code) for cs in rule.codes):
            continue
        value = resource.numeric_value if isinstance(resource, ObservationResource) else None
        matches.append(_Match(on=on, rule=rule, value=value))
    # value breaks ties so equal-date results order the same way on every run
    matches.sort(key=lambda m: (m.on, m.value if m.value is not None else float("-inf")), reverse=True)
    return matches


def _eligibility_start(
    measure: MeasureDefinition,
    min_age: int | None,
    birth_date: date | None,
    qualifying: Sequence[ConditionResource],
    as_of: date,
) -> date:
    """Earliest date the patient became subject to the measure; ``as_of`` if unknown."""
    starts = []
    if birth_date is not None and min_age is not None:
        starts.append(birth_date + relativedelta(years=min_age))
    onsets = [c.clinical_date for c in qualifying if c.clinical_date is not None]
    if onsets:
        starts.append(min(onsets))
    return min(max(starts), as_of) if starts else as_of


def _time_since_message(last: date, as_of: date, label: str) -> str:
    elapsed = relativedelta(as_of, last)
    years, months = elapsed.years, elapsed.years * 12 + elapsed.months
    if years >= 2:
        return f"It's been over {years} years since your last {label}"
    if years == 1:
        return f"It's been about 1 year since your last {label}"
    if months >= 6:
        return f"It's been {months} months since your last {label}"
    if months >= 1:
        return f"Your last {label} was {months} month{'s' if months > 1 else ''} ago"
    return f"Your last {label} was recent"


def _coerce(items: Iterable[Any] | None, view: type[FhirResource]) -> list:
    coerced = []
    for item in items or []:
        resource = _coerce_one(item, view)
        if resource is not None:
            coerced.append(resource)
    return coerced


def _coerce_one(item: Any, view: type[FhirResource]):
    if item is None or isinstance(item, view):
        return item
    if isinstance(item, dict):
        try:
            resource = parse_resource(item)
        except ValueError:
            logger.warning("Skipping unparseable %s record %s", view.__name__, item.get("id"))
            return None
        if isinstance(resource, view):
            return resource
    logger.warning("Skipping %s record of unexpected shape", view.__name__)
    return None
