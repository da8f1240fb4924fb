"""Data model shared by the dosing engine.

All clinical times are datetimes on input and HOURS inside datasets.
Concentrations inside datasets are mg/L.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence


class Sex(str, Enum):
    male = "male"
    female = "female"

    @property
    def code(self) -> int:
        return 1 if self is Sex.male else 0

    @classmethod
    def parse(cls, value) -> "Sex":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in ("m", "male", "1"):
            return cls.male
        if text in ("f", "female", "0"):
            return cls.female
        raise ValueError(f"Unrecognized sex: {value!r}")


class Route(str, Enum):
    oral = "oral"
    iv = "iv"
    sc = "sc"
    im = "im"

    @property
    def compartment(self) -> int:
        # Depot compartment for oral absorption, central otherwise.
        return 2 if self is Route.oral else 1

    @classmethod
    def parse(cls, value) -> "Route":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text in ("sc", "subcutaneous"):
            return cls.sc
        if text in ("im", "intramuscular"):
            return cls.im
        if "po" in text or "oral" in text or "경구" in text:
            return cls.oral
        return cls.iv


class RenalFormula(str, Enum):
    cockcroft_gault = "cockcroft_gault"
    mdrd = "mdrd"
    ckd_epi = "ckd_epi"

    @classmethod
    def parse(cls, value) -> "RenalFormula":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        for member in cls:
            if text == member.value:
                return member
        return cls.cockcroft_gault


class RenalMetric(str, Enum):
    CRCL = "CRCL"
    EGFR = "EGFR"


class TargetType(str, Enum):
    AUC = "AUC"
    Trough = "Trough"
    Peak = "Peak"


class Drug(str, Enum):
    Vancomycin = "Vancomycin"
    Cyclosporin = "Cyclosporin"

    @property
    def is_transplant_drug(self) -> bool:
        return self is Drug.Cyclosporin

    @classmethod
    def parse(cls, value) -> Optional["Drug"]:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text.startswith("vancomycin"):
            return cls.Vancomycin
        if text in ("cyclosporin", "cyclosporine", "ciclosporin"):
            return cls.Cyclosporin
        return None


class Indication(str, Enum):
    not_specified = "Not specified/Korean"
    neurosurgical = "Neurosurgical patients/Korean"
    renal_transplant = "Renal transplant recipients/Korean"
    allo_hsct = "Allo-HSCT/Korean"
    thoracic_transplant = "Thoracic transplant recipients/European"

    @classmethod
    def parse(cls, value) -> Optional["Indication"]:
        if isinstance(value, cls):
            return value
        text = " ".join(str(value or "").split()).lower()
        for member in cls:
            if text == member.value.lower():
                return member
        return None


@dataclass(frozen=True)
class Patient:
    weight: float
    age: float
    sex: Sex
    height: float


@dataclass(frozen=True)
class RenalAssessment:
    serum_creatinine: Optional[str] = None
    formula: RenalFormula = RenalFormula.cockcroft_gault
    dialysis: bool = False
    renal_replacement: str = ""
    result_override: Optional[str] = None
    selected: bool = False
    recorded_at: Optional[datetime] = None


@dataclass(frozen=True)
class RenalFunction:
    metric: RenalMetric
    value: float

    @property
    def crcl(self) -> Optional[float]:
        return self.value if self.metric is RenalMetric.CRCL else None

    @property
    def egfr(self) -> Optional[float]:
        return self.value if self.metric is RenalMetric.EGFR else None


@dataclass(frozen=True)
class DoseEvent:
    timestamp: datetime
    amount: float
    route: Route = Route.iv
    infusion_minutes: Optional[float] = None

    @property
    def rate(self) -> float:
        return infusion_rate(self.amount, self.route, self.infusion_minutes)


@dataclass(frozen=True)
class ObservationEvent:
    timestamp: datetime
    concentration: float
    unit: str = "mg/L"


@dataclass(frozen=True)
class TargetSpec:
    drug_name: str
    indication: str = ""
    additional_info: str = ""
    target_type: Optional[TargetType] = None
    range_low: Optional[float] = None
    range_high: Optional[float] = None
    unit: str = ""

    @property
    def has_range(self) -> bool:
        return self.range_low is not None or self.range_high is not None

    @property
    def bounds(self):
        """(low, high) with a missing bound copied from the present one."""
        low = self.range_low if self.range_low is not None else self.range_high
        high = self.range_high if self.range_high is not None else self.range_low
        return low, high


@dataclass(frozen=True)
class RegimenParams:
    amount: Optional[float]
    tau: Optional[float]
    rate: float = 0.0
    cmt: int = 1


@dataclass(frozen=True)
class DatasetRow:
    ID: str
    TIME: float
    DV: Optional[float]
    AMT: float
    RATE: float
    CMT: int
    WT: float
    SEX: int
    AGE: float
    CRCL: Optional[float]
    EGFR: Optional[float]
    TOXI: int
    EVID: int

    def to_dict(self) -> dict:
        return {
            "ID": self.ID,
            "TIME": self.TIME,
            "DV": self.DV,
            "AMT": self.AMT,
            "RATE": self.RATE,
            "CMT": self.CMT,
            "WT": self.WT,
            "SEX": self.SEX,
            "AGE": self.AGE,
            "CRCL": self.CRCL,
            "EGFR": self.EGFR,
            "TOXI": self.TOXI,
            "EVID": self.EVID,
        }


@dataclass
class CandidateRegimen:
    amount: float
    score: float = float("inf")
    predicted: Optional[float] = None
    result: Optional[object] = None
    error: Optional[str] = None

    @property
    def settled_ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TdmCase:
    """Everything the engine knows about one patient on one drug."""

    patient_id: str
    patient: Patient
    target: TargetSpec
    doses: Sequence[DoseEvent] = field(default_factory=tuple)
    observations: Sequence[ObservationEvent] = field(default_factory=tuple)
    renal: Optional[RenalAssessment] = None
    route: Optional[Route] = None
    dosage_form: str = ""


def infusion_rate(amount, route, infusion_minutes) -> float:
    """mg/h for a timed IV infusion, 0 for bolus and non-IV routes."""
    if route is not Route.iv or not infusion_minutes or infusion_minutes <= 0:
        return 0.0
    return float(amount) / (float(infusion_minutes) / 60.0)
