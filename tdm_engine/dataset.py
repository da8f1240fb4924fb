"""Evaluator payload assembly: before/after regimens and the event dataset.

Usage:
    python -m tdm_engine.dataset

prints the request body for a small built-in example case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from tdm_engine.config import EngineConfig
from tdm_engine.exceptions import DatasetError
from tdm_engine.records import (
    DatasetRow,
    DoseEvent,
    Drug,
    Indication,
    ObservationEvent,
    Patient,
    RegimenParams,
    RenalFunction,
    RenalMetric,
    Route,
    TargetSpec,
    TargetType,
    TdmCase,
    infusion_rate,
)
from tdm_engine.renal import estimate_renal_function
from tdm_engine.targets import target_midpoint


logger = logging.getLogger(__name__)

DATASET_COLUMNS = [
    "ID",
    "TIME",
    "DV",
    "AMT",
    "RATE",
    "CMT",
    "WT",
    "SEX",
    "AGE",
    "CRCL",
    "EGFR",
    "TOXI",
    "EVID",
]

# Divisor to mg/L
UNIT_DIVISOR_TO_MG_L = {
    "mg/l": 1.0,
    "ug/ml": 1.0,
    "µg/ml": 1.0,
    "μg/ml": 1.0,
    "mcg/ml": 1.0,
    "ng/ml": 1000.0,
    "ug/l": 1000.0,
    "µg/l": 1000.0,
    "μg/l": 1000.0,
    "mcg/l": 1000.0,
}

NEPHROTOXIC_KEYWORDS = (
    "nephrotoxic",
    "aminoglycoside",
    "amikacin",
    "tobramycin",
    "gentamicin",
    "amphotericin",
    "antiviral",
    "acyclovir",
    "famciclovir",
    "ganciclovir",
    "colistimethate",
    "colistin",
    "cytotoxic",
    "cytosine arabinoside",
    "fludarabine",
    "idarubicin",
    "cyclosporin",
    "tacrolimus",
    "non-steroidal",
    "nsaid",
    "ibuprofen",
    "ketorolac",
    "trimethoprim",
    "sulfamethoxazole",
)

NO_CONCOMITANT_MARKERS = ("none", "other", "없음")

# Target range midpoint is sent under these keys; peak targets are not sent.
TARGET_WIRE_KEYS = {TargetType.AUC: "input_AUC", TargetType.Trough: "input_CTROUGH"}


@dataclass(frozen=True)
class RegimenOverride:
    amount: Optional[float] = None
    tau: Optional[float] = None


@dataclass(frozen=True)
class TdmPayload:
    patient_id: str
    patient: Patient
    renal: RenalFunction
    toxi: int
    before: RegimenParams
    after: RegimenParams
    dataset: Tuple[DatasetRow, ...]
    model_name: Optional[str] = None
    target: Optional[TargetSpec] = None

    def to_request(self, cfg=None) -> dict:
        """Evaluator request body. Key names are a wire contract."""
        cfg = cfg or EngineConfig()
        renal_key = "input_CRCL" if self.renal.metric is RenalMetric.CRCL else "input_EGFR"
        tau_after = _first_set(self.after.tau, self.before.tau, cfg.fallback_tau_h)
        amount_after = _first_set(self.after.amount, self.before.amount, cfg.fallback_amount)
        body = {
            # single-regimen fields read by older evaluators
            "input_tau": tau_after,
            "input_amount": amount_after,
            "input_WT": self.patient.weight,
            renal_key: self.renal.value,
            "input_AGE": self.patient.age,
            "input_SEX": self.patient.sex.code,
            "input_TOXI": self.toxi,
            "input_tau_before": _first_set(self.before.tau, self.after.tau, cfg.fallback_tau_h),
            "input_amount_before": _first_set(self.before.amount, self.after.amount, cfg.fallback_amount),
            "input_rate_before": self.before.rate,
            "input_cmt_before": self.before.cmt,
            "input_tau_after": tau_after,
            "input_amount_after": amount_after,
            "input_rate_after": self.after.rate,
            "input_cmt_after": self.after.cmt,
            "dataset": [row.to_dict() for row in self.dataset],
        }
        target_key = TARGET_WIRE_KEYS.get(self.target.target_type) if self.target is not None else None
        midpoint = target_midpoint(self.target) if target_key else None
        if midpoint is not None:
            body[target_key] = midpoint
        if self.model_name:
            body["model_name"] = self.model_name
        return body


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _hours(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def sorted_doses(doses: Sequence[DoseEvent]) -> List[DoseEvent]:
    return sorted(doses, key=lambda d: d.timestamp)


def infer_tau(doses: Sequence[DoseEvent]) -> Optional[float]:
    """Interval between the two most recent doses (h); None if undefined."""
    if len(doses) < 2:
        return None
    prev, last = sorted_doses(doses)[-2:]
    tau = _hours(last.timestamp, prev.timestamp)
    return tau if tau > 0 else None


def concentration_to_mg_l(value: float, unit: str) -> float:
    key = (unit or "mg/L").strip().lower().replace(" ", "")
    divisor = UNIT_DIVISOR_TO_MG_L.get(key)
    if divisor is None:
        logger.warning("Unknown concentration unit %r, passing value through", unit)
        return float(value)
    return float(value) / divisor


def toxicity_flag(target: TargetSpec) -> int:
    """1 for neurosurgical vancomycin patients on a nephrotoxic co-medication."""
    if Drug.parse(target.drug_name) is not Drug.Vancomycin:
        return 0
    if Indication.parse(target.indication) is not Indication.neurosurgical:
        return 0
    info = (target.additional_info or "").strip().lower()
    if not info or any(info.startswith(marker) for marker in NO_CONCOMITANT_MARKERS):
        return 0
    return int(any(keyword in info for keyword in NEPHROTOXIC_KEYWORDS))


def prescribed_route(case: TdmCase) -> Route:
    if case.route is not None:
        return case.route
    if case.doses:
        return sorted_doses(case.doses)[-1].route
    return Route.iv


def resolve_regimens(case: TdmCase, before_override=None, after_override=None):
    """(before, after) regimen parameters for the case."""
    before_override = before_override or RegimenOverride()
    after_override = after_override or RegimenOverride()
    doses = sorted_doses(case.doses)
    last = doses[-1] if doses else None
    route = prescribed_route(case)

    before = RegimenParams(
        amount=_first_set(before_override.amount, last.amount if last else None),
        tau=_first_set(before_override.tau, infer_tau(doses)),
        rate=last.rate if last else 0.0,
        cmt=route.compartment,
    )

    after_amount = _first_set(after_override.amount, before.amount)
    after_tau = _first_set(after_override.tau, before.tau)
    after_rate = before.rate
    if last is not None and after_amount is not None:
        after_rate = infusion_rate(after_amount, last.route, last.infusion_minutes)
    after = replace(before, amount=after_amount, tau=after_tau, rate=after_rate)
    return before, after


def build_dataset(case: TdmCase, renal: RenalFunction, toxi: int, after: RegimenParams, cfg=None) -> List[DatasetRow]:
    cfg = cfg or EngineConfig()
    patient = case.patient
    doses = sorted_doses(case.doses)
    observations = sorted(case.observations, key=lambda o: o.timestamp)
    obs_cmt = prescribed_route(case).compartment

    for dose in doses:
        if dose.amount < 0:
            raise DatasetError("Dose amount must be >= 0", details={"amount": dose.amount})
    for obs in observations:
        if obs.concentration < 0:
            raise DatasetError("Concentration must be >= 0", details={"concentration": obs.concentration})

    def row(time, dv, amt, rate, cmt, evid):
        return DatasetRow(
            ID=case.patient_id,
            TIME=max(0.0, time),
            DV=dv,
            AMT=amt,
            RATE=rate,
            CMT=cmt,
            WT=patient.weight,
            SEX=patient.sex.code,
            AGE=patient.age,
            CRCL=renal.crcl,
            EGFR=renal.egfr,
            TOXI=toxi,
            EVID=evid,
        )

    if doses:
        anchor = doses[0].timestamp
    elif observations:
        anchor = observations[0].timestamp
    else:
        anchor = None

    rows = []
    if doses:
        for dose in doses:
            rows.append(row(_hours(dose.timestamp, anchor), None, float(dose.amount), dose.rate, dose.route.compartment, 1))
    else:
        amount = _first_set(after.amount, cfg.fallback_amount)
        logger.debug("No dose history, synthesizing a single dose of %s at TIME=0", amount)
        rows.append(row(0.0, None, float(amount), 0.0, obs_cmt, 1))

    if observations:
        for obs in observations:
            dv = concentration_to_mg_l(obs.concentration, obs.unit)
            rows.append(row(_hours(obs.timestamp, anchor), dv, 0.0, 0.0, obs_cmt, 0))
    else:
        time = _first_set(after.tau, cfg.synthetic_observation_time_h)
        logger.debug("No observations, adding a forecast anchor row at TIME=%s", time)
        rows.append(row(float(time), None, 0.0, 0.0, obs_cmt, 0))

    return rows


def build_payload(case: TdmCase, cfg=None, model_name=None, before_override=None, after_override=None) -> TdmPayload:
    """Before/after regimens plus the event dataset for one evaluator call."""
    cfg = cfg or EngineConfig()
    patient = case.patient
    renal = estimate_renal_function(patient.weight, patient.age, patient.sex, patient.height, case.renal, cfg)
    toxi = toxicity_flag(case.target)
    before, after = resolve_regimens(case, before_override, after_override)
    rows = build_dataset(case, renal, toxi, after, cfg)
    return TdmPayload(
        patient_id=case.patient_id,
        patient=patient,
        renal=renal,
        toxi=toxi,
        before=before,
        after=after,
        dataset=tuple(rows),
        model_name=model_name,
        target=case.target,
    )


def last_observed_trough(case: TdmCase) -> Optional[float]:
    """Most recent measured concentration in mg/L."""
    if not case.observations:
        return None
    last = max(case.observations, key=lambda o: o.timestamp)
    return concentration_to_mg_l(last.concentration, last.unit)


def dataset_frame(rows: Sequence[DatasetRow]) -> pd.DataFrame:
    return pd.DataFrame([r.to_dict() for r in rows], columns=DATASET_COLUMNS)


if __name__ == "__main__":
    from tdm_engine.records import RenalAssessment, RenalFormula, Sex

    example = TdmCase(
        patient_id="P001",
        patient=Patient(weight=70.0, age=50, sex=Sex.male, height=175.0),
        target=TargetSpec(drug_name="Vancomycin", indication=Indication.not_specified.value),
        doses=(
            DoseEvent(datetime(2025, 1, 1, 8, 0), 1000.0, Route.iv, 60),
            DoseEvent(datetime(2025, 1, 1, 20, 0), 1000.0, Route.iv, 60),
        ),
        observations=(ObservationEvent(datetime(2025, 1, 2, 7, 30), 12.4, "mg/L"),),
        renal=RenalAssessment(serum_creatinine="1.2", formula=RenalFormula.ckd_epi),
    )
    payload = build_payload(example)
    print(dataset_frame(payload.dataset))
    print(payload.to_request())
