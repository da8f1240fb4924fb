"""Target specs: ingestion-time parsing and range classification."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Tuple

from tdm_engine.records import Drug, Indication, TargetSpec, TargetType


_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

# Default TDM target per drug/indication when the prescription leaves it blank.
DEFAULT_TARGETS = {
    (Drug.Vancomycin, Indication.not_specified): ("AUC", "400-600 mg·h/L"),
    (Drug.Vancomycin, Indication.neurosurgical): ("AUC", "400-600 mg·h/L"),
    (Drug.Cyclosporin, Indication.renal_transplant): ("Trough Concentration", "300-350 ng/mL"),
    (Drug.Cyclosporin, Indication.allo_hsct): ("Trough Concentration", "150-400 ng/mL"),
    (Drug.Cyclosporin, Indication.thoracic_transplant): ("Trough Concentration", "170-230 ng/mL"),
}


class RangeStatus(str, Enum):
    within = "within"
    above = "above"
    below = "below"


def parse_target_type(text) -> Optional[TargetType]:
    lowered = str(text or "").lower()
    if "auc" in lowered:
        return TargetType.AUC
    if "trough" in lowered:
        return TargetType.Trough
    if "peak" in lowered or "max" in lowered:
        return TargetType.Peak
    return None


def parse_target_range(text) -> Tuple[Optional[float], Optional[float], str]:
    """'400-600 mg·h/L' -> (400.0, 600.0, 'mg·h/L').

    A single number gives a point target. No number gives (None, None, '').
    """
    text = str(text or "")
    matches = list(_NUMBER_RE.finditer(text))[:2]
    if not matches:
        return None, None, ""
    low = float(matches[0].group())
    high = float(matches[1].group()) if len(matches) > 1 else low
    if high < low:
        low, high = high, low
    unit = text[matches[-1].end():].strip()
    return low, high, unit


def build_target_spec(drug_name, indication="", additional_info="", target_text=None, range_text=None) -> TargetSpec:
    """Turn prescription free text into a structured TargetSpec."""
    if not target_text and not range_text:
        default = DEFAULT_TARGETS.get((Drug.parse(drug_name), Indication.parse(indication)))
        if default is not None:
            target_text, range_text = default

    low, high, unit = parse_target_range(range_text)
    return TargetSpec(
        drug_name=str(drug_name or ""),
        indication=str(indication or ""),
        additional_info=str(additional_info or ""),
        target_type=parse_target_type(target_text),
        range_low=low,
        range_high=high,
        unit=unit,
    )


def concentration_unit(drug_name) -> str:
    return "ng/mL" if Drug.parse(drug_name) is Drug.Cyclosporin else "mg/L"


def to_target_units(value_mg_l, spec: TargetSpec):
    """Express an evaluator concentration (mg/L) in the unit the target uses."""
    if value_mg_l is None:
        return None
    if spec.target_type is not TargetType.AUC and "ng/ml" in spec.unit.lower():
        return value_mg_l * 1000.0
    return value_mg_l


def target_midpoint(spec: TargetSpec) -> Optional[float]:
    """Centre of the target range (the value itself for a point target)."""
    if not spec.has_range:
        return None
    low, high = spec.bounds
    return (low + high) / 2.0


def predicted_value(spec: TargetSpec, auc=None, cmax=None, ctrough=None):
    if spec.target_type is TargetType.Trough:
        return ctrough
    if spec.target_type is TargetType.Peak:
        return cmax
    return auc


def classify(value, spec: TargetSpec) -> RangeStatus:
    """Where value sits relative to the target range.

    A missing range or value counts as within range.
    """
    if value is None or not spec.has_range:
        return RangeStatus.within
    low, high = spec.bounds
    if value < low:
        return RangeStatus.below
    if value > high:
        return RangeStatus.above
    return RangeStatus.within


def is_within_range(value, spec: TargetSpec) -> bool:
    return classify(value, spec) is RangeStatus.within


def deviation_percent(value, spec: TargetSpec) -> float:
    """Percent over the high bound or under the low bound; 0 when within."""
    status = classify(value, spec)
    low, high = spec.bounds
    if status is RangeStatus.above:
        return (value - high) / high * 100.0 if high else float("inf")
    if status is RangeStatus.below:
        return (low - value) / low * 100.0 if low else float("inf")
    return 0.0


def distance_to_range(value, spec: TargetSpec) -> float:
    low, high = spec.bounds
    if value < low:
        return low - value
    if value > high:
        return value - high
    return 0.0
