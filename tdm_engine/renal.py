"""Renal function estimation (CRCL / eGFR) and renal assessment selection."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Protocol

import numpy as np

from tdm_engine.config import EngineConfig
from tdm_engine.records import RenalAssessment, RenalFormula, RenalFunction, RenalMetric, Sex


logger = logging.getLogger(__name__)

_OVERRIDE_RE = re.compile(r"^\s*(?:(crcl|egfr)\s*[=:]?\s*)?([-+]?\d*\.?\d+)", re.IGNORECASE)

FORMULA_METRIC = {
    RenalFormula.cockcroft_gault: RenalMetric.CRCL,
    RenalFormula.mdrd: RenalMetric.EGFR,
    RenalFormula.ckd_epi: RenalMetric.EGFR,
}


def _female_mask(sex):
    sex_arr = np.asarray(sex)
    if sex_arr.dtype.kind in "iub":
        return sex_arr == 0
    lowered = np.char.lower(sex_arr.astype(str))
    return np.isin(lowered, ["f", "female"])


def mosteller_bsa(height_cm, weight_kg, reference=1.73):
    """Mosteller BSA (m^2); the reference BSA where height or weight is missing."""
    height = np.asarray(height_cm, dtype=float)
    weight = np.asarray(weight_kg, dtype=float)
    valid = (height > 0) & (weight > 0)
    bsa = np.sqrt(np.where(valid, height * weight, 0.0) / 3600.0)
    return np.where(valid, bsa, reference)


def crcl_cockcroft_gault(scr_mg_dl, age, weight_kg, sex):
    """Cockcroft-Gault creatinine clearance (mL/min)."""
    scr = np.asarray(scr_mg_dl, dtype=float)
    age_arr = np.asarray(age, dtype=float)
    weight = np.asarray(weight_kg, dtype=float)
    base = ((140.0 - age_arr) * weight) / (72.0 * scr)
    return np.where(_female_mask(sex), base * 0.85, base)


def egfr_mdrd(scr_mg_dl, age, sex, height_cm, weight_kg, reference_bsa=1.73):
    """MDRD eGFR (175 coefficient), de-indexed to the patient's BSA."""
    scr = np.asarray(scr_mg_dl, dtype=float)
    age_arr = np.asarray(age, dtype=float)
    sex_factor = np.where(_female_mask(sex), 0.742, 1.0)

    with np.errstate(divide="ignore"):
        egfr = 175.0 * scr ** -1.154 * age_arr ** -0.203 * sex_factor
    return egfr * (mosteller_bsa(height_cm, weight_kg, reference_bsa) / reference_bsa)


def egfr_ckd_epi_2009(scr_mg_dl, age, sex, height_cm, weight_kg, reference_bsa=1.73):
    """Compute CKD-EPI 2009 creatinine eGFR, de-indexed to the patient's BSA.

    sex should be 'F'/'M', female/male-like strings or 0/1 (0 = female).
    """
    scr = np.asarray(scr_mg_dl, dtype=float)
    age_arr = np.asarray(age, dtype=float)
    female = _female_mask(sex)

    kappa = np.where(female, 0.7, 0.9)
    alpha = np.where(female, -0.329, -0.411)
    sex_factor = np.where(female, 1.018, 1.0)

    ratio = scr / kappa
    min_term = np.minimum(ratio, 1.0) ** alpha
    max_term = np.maximum(ratio, 1.0) ** (-1.209)

    egfr = 141.0 * min_term * max_term * (0.993 ** age_arr) * sex_factor
    return egfr * (mosteller_bsa(height_cm, weight_kg, reference_bsa) / reference_bsa)


def parse_result_override(text) -> Optional[tuple]:
    """Parse 'CRCL=55', 'eGFR=80' or '55' into (metric or None, value)."""
    if text is None:
        return None
    match = _OVERRIDE_RE.match(str(text))
    if not match:
        return None
    if str(text)[match.end():].strip():
        logger.debug("Ignoring trailing text in renal result override %r", text)
    value = float(match.group(2))
    if not value > 0:
        return None
    tag = match.group(1)
    metric = RenalMetric(tag.upper()) if tag else None
    return metric, value


def parse_creatinine(text) -> Optional[float]:
    try:
        value = float(str(text).strip())
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def estimate_renal_function(weight, age, sex, height, assessment=None, cfg=None) -> RenalFunction:
    """Derive CRCL or eGFR from the chosen renal assessment.

    Precedence: a positive result override wins, then the assessment's formula
    on a positive creatinine (when it yields a finite positive value), then
    the default CRCL.
    """
    cfg = cfg or EngineConfig()
    sex = Sex.parse(sex)

    if assessment is not None:
        override = parse_result_override(assessment.result_override)
        if override is not None:
            metric, value = override
            return RenalFunction(metric or FORMULA_METRIC[assessment.formula], value)

        scr = parse_creatinine(assessment.serum_creatinine)
        if scr is not None:
            sex_label = sex.value
            if assessment.formula is RenalFormula.mdrd:
                value = egfr_mdrd(scr, age, sex_label, height, weight, cfg.bsa_reference)
            elif assessment.formula is RenalFormula.ckd_epi:
                value = egfr_ckd_epi_2009(scr, age, sex_label, height, weight, cfg.bsa_reference)
            else:
                value = crcl_cockcroft_gault(scr, age, weight, sex_label)
            value = float(value)
            if np.isfinite(value) and value > 0:
                return RenalFunction(FORMULA_METRIC[assessment.formula], value)
            logger.debug("%s gave unusable value %s, ignoring assessment", assessment.formula.value, value)

    logger.debug("No usable renal assessment, using default CRCL=%s", cfg.default_crcl)
    return RenalFunction(RenalMetric.CRCL, float(cfg.default_crcl))


def is_crrt(assessment) -> bool:
    if assessment is None:
        return False
    return "crrt" in (assessment.renal_replacement or "").lower()


class RenalAssessmentRepository(Protocol):
    def all(self) -> List[RenalAssessment]: ...

    def chosen(self) -> Optional[RenalAssessment]: ...


class InMemoryRenalAssessmentRepository:
    """Assessments for one patient.

    Selection policy for ``chosen()``:
      1. the assessment flagged ``selected`` (the last one if several are);
      2. otherwise the most recent by ``recorded_at``; assessments without a
         timestamp rank by insertion order, behind timestamped ones;
      3. None when empty.
    """

    def __init__(self, assessments: Iterable[RenalAssessment] = ()):
        self._items = list(assessments)

    def add(self, assessment: RenalAssessment) -> None:
        self._items.append(assessment)

    def all(self) -> List[RenalAssessment]:
        return list(self._items)

    def chosen(self) -> Optional[RenalAssessment]:
        if not self._items:
            return None
        flagged = [a for a in self._items if a.selected]
        if flagged:
            return flagged[-1]
        timestamped = [(i, a) for i, a in enumerate(self._items) if a.recorded_at is not None]
        if timestamped:
            return max(timestamped, key=lambda pair: (pair[1].recorded_at, pair[0]))[1]
        return self._items[-1]
