"""
Preventive-care measure catalog.

Static HEDIS/USPSTF-style measure definitions. Each measure states who is
eligible (age, gender, required diagnoses), what excludes a patient, which
coded records count as evidence and for how long, and which conditions make
an open gap more urgent.

SUPPORTED MEASURES:
    HEDIS-COL                Colorectal cancer screening
    HEDIS-BCS                Breast cancer screening
    HEDIS-CCS                Cervical cancer screening
    HEDIS-CDC-HbA1c          Diabetes care - HbA1c testing
    HEDIS-CDC-HbA1c-Control  Diabetes care - HbA1c poor control (>9%)
    HEDIS-CDC-EyeExam        Diabetes care - eye exam
    HEDIS-CDC-Nephropathy    Diabetes care - nephropathy monitoring
    BP-Monitor               Adult blood pressure check
    HTN-Monitor              Blood pressure monitoring with hypertension
    Cholesterol-Screen       Lipid panel
    Flu-Vaccine              Annual influenza vaccine
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from healthvault.schemas.resources import CodeableConcept


class GapStatus(str, Enum):
    DUE = "due"
    SATISFIED = "satisfied"
    NOT_APPLICABLE = "not_applicable"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class Category(str, Enum):
    PREVENTIVE = "preventive"
    CHRONIC = "chronic"
    WELLNESS = "wellness"


class EvidenceSource(str, Enum):
    CONDITION = "condition"
    OBSERVATION = "observation"
    IMMUNIZATION = "immunization"


@dataclass(frozen=True)
class CodeSet:
    """
    Codes from one terminology. ``system`` is matched as a substring of the
    coding system URI with hyphens dropped ("loinc" matches http://loinc.org,
    "icd10" matches http://hl7.org/fhir/sid/icd-10-cm), codes exactly and
    prefixes with startswith (ICD-10 families such as E11).
    """

    system: str
    codes: frozenset[str] = frozenset()
    prefixes: tuple[str, ...] = ()

    def matches(self, concept: CodeableConcept | None) -> bool:
        if concept is None:
            return False
        for coding in concept.coding:
            if not coding.system or not coding.code:
                continue
            if self.system not in coding.system.lower().replace("-", ""):
                continue
            if coding.code in self.codes or any(coding.code.startswith(p) for p in self.prefixes):
                return True
        return False


def loinc(*codes: str) -> CodeSet:
    return CodeSet("loinc", frozenset(codes))


def snomed(*codes: str) -> CodeSet:
    return CodeSet("snomed", frozenset(codes))


def icd10(*prefixes: str) -> CodeSet:
    return CodeSet("icd10", prefixes=prefixes)


def cvx(*codes: str) -> CodeSet:
    return CodeSet("cvx", frozenset(codes))


@dataclass(frozen=True)
class EvidenceRule:
    """Records matching ``codes`` within ``lookback_months`` satisfy the measure."""

    source: EvidenceSource
    codes: tuple[CodeSet, ...]
    lookback_months: int
    # When set, only the most recent in-window result counts, and it must not exceed this.
    max_value: float | None = None


@dataclass(frozen=True)
class MeasureDefinition:
    measure_id: str
    title: str
    description: str
    category: Category
    default_priority: Priority
    recommended_action: str
    evidence: tuple[EvidenceRule, ...]
    evidence_label: str
    min_age: int | None = None
    max_age: int | None = None
    gender: str | None = None
    required_conditions: tuple[CodeSet, ...] = ()
    # Patients with one of these conditions become eligible from risk_min_age.
    risk_conditions: tuple[CodeSet, ...] = ()
    risk_min_age: int | None = None
    exclusions: tuple[CodeSet, ...] = ()
    exclusion_reason: str = "documented exclusion"
    escalation_conditions: tuple[CodeSet, ...] = ()
    escalate_when_overdue: bool = True
    satisfied_action: str = "Continue routine care per guidelines."
    not_applicable_action: str = "No action needed at this time."


# ---------------------------------------------------------------------------
# Shared code sets
# ---------------------------------------------------------------------------

DIABETES = (
    snomed("44054006", "73211009", "46635009", "237627000"),
    icd10("E10", "E11"),
)
HYPERTENSION = (snomed("38341003", "59621000"), icd10("I10"))
CARDIOVASCULAR_RISK = (
    snomed("44054006", "73211009", "38341003", "22298006"),
    icd10("E11", "I10", "Z87"),
)
BLOOD_PRESSURE = loinc("85354-9", "8480-6", "8462-4")
HBA1C = loinc("4548-4", "4549-2", "17856-6")


MEASURE_CATALOG: tuple[MeasureDefinition, ...] = (
    MeasureDefinition(
        measure_id="HEDIS-COL",
        title="Colorectal Cancer Screening",
        description="Regular screening helps detect problems early when they're most treatable.",
        category=Category.PREVENTIVE,
        default_priority=Priority.HIGH,
        recommended_action=(
            "Consider scheduling a colonoscopy (every 10 years) or completing an "
            "annual stool test (FIT/FOBT)."
        ),
        evidence=(
            EvidenceRule(
                EvidenceSource.OBSERVATION,
                (loinc("2335-8", "27401-3", "12503-9", "14563-1", "14564-9", "14565-6"),),
                lookback_months=12,
            ),
            EvidenceRule(EvidenceSource.OBSERVATION, (loinc("18501-7"),), lookback_months=60),
            EvidenceRule(EvidenceSource.OBSERVATION, (loinc("18500-9"),), lookback_months=120),
        ),
        evidence_label="colorectal screening",
        min_age=45,
        max_age=75,
        exclusions=(snomed("93761005", "109355002", "363406005"),),
        exclusion_reason="history of colorectal cancer",
        satisfied_action="Continue routine screening per guidelines.",
    ),
    MeasureDefinition(
        measure_id="HEDIS-BCS",
        title="Breast Cancer Screening",
        description="Mammography every two years is recommended for women aged 50-74.",
        category=Category.PREVENTIVE,
        default_priority=Priority.HIGH,
        recommended_action="Schedule a screening mammogram.",
        evidence=(
            EvidenceRule(
                EvidenceSource.OBSERVATION,
                (loinc("24606-6", "24605-8", "26346-7", "26347-5", "26348-3", "26349-1"),),
                lookback_months=27,
            ),
        ),
        evidence_label="mammogram",
        min_age=50,
        max_age=74,
        gender="female",
        exclusions=(snomed("429400009", "137739009"),),
        exclusion_reason="history of bilateral mastectomy",
        satisfied_action="Continue routine mammography screening every 2 years.",
    ),
    MeasureDefinition(
        measure_id="HEDIS-CCS",
        title="Cervical Cancer Screening",
        description="A Pap test every three years is recommended for women aged 21-64.",
        category=Category.PREVENTIVE,
        default_priority=Priority.MEDIUM,
        recommended_action="Schedule a Pap test with your primary care provider or gynecologist.",
        evidence=(
            EvidenceRule(
                EvidenceSource.OBSERVATION,
                (loinc("10524-7", "19762-4", "19764-0", "19765-7", "19766-5", "33717-0"),),
                lookback_months=36,
            ),
        ),
        evidence_label="cervical cancer screening",
        min_age=21,
        max_age=64,
        gender="female",
        exclusions=(snomed("116140006", "236886002"), icd10("Z90.71")),
        exclusion_reason="history of hysterectomy",
    ),
    MeasureDefinition(
        measure_id="HEDIS-CDC-HbA1c",
        title="HbA1c Test",
        description="Regular HbA1c testing helps monitor diabetes management over time.",
        category=Category.CHRONIC,
        default_priority=Priority.HIGH,
        recommended_action=(
            "Schedule an HbA1c lab test with your healthcare provider. This simple "
            "blood test shows your average blood sugar over the past 2-3 months."
        ),
        evidence=(EvidenceRule(EvidenceSource.OBSERVATION, (HBA1C,), lookback_months=12),),
        evidence_label="HbA1c result",
        required_conditions=DIABETES,
    ),
    MeasureDefinition(
        measure_id="HEDIS-CDC-HbA1c-Control",
        title="Glycemic Control",
        description="An HbA1c above 9% indicates poor glycemic control.",
        category=Category.CHRONIC,
        default_priority=Priority.HIGH,
        recommended_action="Review your medication regimen with your provider and consider adjustments.",
        evidence=(
            EvidenceRule(EvidenceSource.OBSERVATION, (HBA1C,), lookback_months=12, max_value=9.0),
        ),
        evidence_label="HbA1c result at or below 9%",
        required_conditions=DIABETES,
        escalate_when_overdue=False,
    ),
    MeasureDefinition(
        measure_id="HEDIS-CDC-EyeExam",
        title="Diabetic Eye Exam",
        description="Annual eye exams help detect diabetic eye disease early, when treatment is most effective.",
        category=Category.CHRONIC,
        default_priority=Priority.MEDIUM,
        recommended_action=(
            "Schedule a comprehensive dilated eye exam with an eye care professional, "
            "even if your vision seems fine."
        ),
        evidence=(EvidenceRule(EvidenceSource.OBSERVATION, (loinc("32451-7", "29246-0"),), lookback_months=12),),
        evidence_label="diabetic eye exam",
        required_conditions=DIABETES,
    ),
    MeasureDefinition(
        measure_id="HEDIS-CDC-Nephropathy",
        title="Nephropathy Monitoring",
        description="Annual nephropathy monitoring is recommended for patients with diabetes.",
        category=Category.CHRONIC,
        default_priority=Priority.MEDIUM,
        recommended_action="Schedule a urine microalbumin test.",
        evidence=(
            EvidenceRule(
                EvidenceSource.OBSERVATION, (loinc("13705-9", "32294-1", "31208-2"),), lookback_months=12
            ),
        ),
        evidence_label="urine microalbumin test",
        required_conditions=DIABETES,
    ),
    MeasureDefinition(
        measure_id="BP-Monitor",
        title="Blood Pressure Check",
        description="Regular blood pressure monitoring helps detect hypertension early.",
        category=Category.PREVENTIVE,
        default_priority=Priority.MEDIUM,
        recommended_action=(
            "Schedule a blood pressure check with your healthcare provider. This can "
            "often be done during routine visits or at many pharmacies."
        ),
        evidence=(EvidenceRule(EvidenceSource.OBSERVATION, (BLOOD_PRESSURE,), lookback_months=24),),
        evidence_label="blood pressure reading",
        min_age=18,
        escalation_conditions=HYPERTENSION,
        escalate_when_overdue=False,
    ),
    MeasureDefinition(
        measure_id="HTN-Monitor",
        title="Blood Pressure Monitoring",
        description="With hypertension, regular monitoring helps ensure your treatment is working effectively.",
        category=Category.CHRONIC,
        default_priority=Priority.HIGH,
        recommended_action=(
            "Schedule a blood pressure check with your healthcare provider. Consider "
            "monitoring at home between visits."
        ),
        evidence=(EvidenceRule(EvidenceSource.OBSERVATION, (BLOOD_PRESSURE,), lookback_months=6),),
        evidence_label="blood pressure reading",
        required_conditions=HYPERTENSION,
    ),
    MeasureDefinition(
        measure_id="Cholesterol-Screen",
        title="Cholesterol Screening",
        description="Regular cholesterol testing helps assess your heart disease risk.",
        category=Category.PREVENTIVE,
        default_priority=Priority.MEDIUM,
        recommended_action=(
            "Schedule a cholesterol panel (lipid test) with your healthcare provider. "
            "This simple blood test should be done every 4-6 years."
        ),
        evidence=(
            EvidenceRule(
                EvidenceSource.OBSERVATION,
                (loinc("2093-3", "18262-6", "2085-9", "2089-1"),),
                lookback_months=60,
            ),
        ),
        evidence_label="cholesterol test",
        min_age=40,
        risk_conditions=CARDIOVASCULAR_RISK,
        risk_min_age=20,
        escalation_conditions=CARDIOVASCULAR_RISK,
    ),
    MeasureDefinition(
        measure_id="Flu-Vaccine",
        title="Annual Flu Vaccine",
        description="Annual influenza vaccination is recommended for everyone 6 months and older.",
        category=Category.WELLNESS,
        default_priority=Priority.MEDIUM,
        recommended_action=(
            "Schedule your annual flu vaccine. It's especially important during flu "
            "season (fall/winter)."
        ),
        evidence=(
            EvidenceRule(
                EvidenceSource.IMMUNIZATION,
                (cvx("88", "141", "150", "155", "158", "161", "166", "171", "185", "186", "197"),),
                lookback_months=12,
            ),
        ),
        evidence_label="flu vaccine",
        min_age=0,
        escalate_when_overdue=False,
    ),
)


def get_measure(measure_id: str) -> MeasureDefinition:
    for measure in MEASURE_CATALOG:
        if measure.measure_id == measure_id:
            return measure
    raise KeyError(measure_id)
