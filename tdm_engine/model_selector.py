"""Population-PK model variant selection.

Each (drug, indication) pair maps to one rule. A rule is one of three shapes:
a fixed code, a renal-replacement/recent-dose rule, or a post-op-day rule.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple, Union

from tdm_engine.config import EngineConfig
from tdm_engine.records import Drug, Indication
from tdm_engine.renal import is_crrt


@dataclass(frozen=True)
class FixedVariant:
    code: str


@dataclass(frozen=True)
class RenalReplacementRule:
    default: str
    crrt: Optional[str] = None
    within_72h: Optional[str] = None


@dataclass(frozen=True)
class PostOpDayRule:
    default: str
    buckets: Dict[str, str] = field(default_factory=dict)


VariantRule = Union[FixedVariant, RenalReplacementRule, PostOpDayRule]


VARIANT_TABLE: Dict[Tuple[Drug, Indication], VariantRule] = {
    (Drug.Vancomycin, Indication.not_specified): RenalReplacementRule(
        default="Vancomycin1-1", crrt="Vancomycin1-2"
    ),
    (Drug.Vancomycin, Indication.neurosurgical): RenalReplacementRule(
        default="Vancomycin2-1", within_72h="Vancomycin2-2"
    ),
    (Drug.Cyclosporin, Indication.renal_transplant): PostOpDayRule(
        default="Cyclosporin1-1",
        buckets={"~2": "Cyclosporin1-1", "3~6": "Cyclosporin1-2", "7~": "Cyclosporin1-3"},
    ),
    (Drug.Cyclosporin, Indication.allo_hsct): FixedVariant("Cyclosporin2"),
    (Drug.Cyclosporin, Indication.thoracic_transplant): FixedVariant("Cyclosporin3"),
}


@dataclass(frozen=True)
class ModelContext:
    drug: Optional[Drug]
    indication: Optional[Indication]
    additional_info: str = ""
    renal_replacement: str = ""
    hours_since_last_dose: Optional[float] = None


def normalize_model_code(code: Optional[str]) -> Optional[str]:
    """'Vancomycin1-2' -> 'vancomycin1_2'."""
    if not code:
        return code
    return (code[0].lower() + code[1:]).replace("-", "_")


def post_op_bucket(text) -> str:
    """'POD 3~6' / '3 ~ 6' -> '3~6'."""
    cleaned = re.sub(r"\s+", "", str(text or ""))
    return re.sub(r"^pod", "", cleaned, flags=re.IGNORECASE)


def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def choose_variant(rule: VariantRule, context: ModelContext, cfg=None) -> str:
    cfg = cfg or EngineConfig()
    if isinstance(rule, FixedVariant):
        return rule.code
    if isinstance(rule, RenalReplacementRule):
        if rule.crrt and "crrt" in (context.renal_replacement or "").lower():
            return rule.crrt
        recent = (
            context.hours_since_last_dose is not None
            and context.hours_since_last_dose <= cfg.recent_dose_window_h
        )
        if rule.within_72h and recent:
            return rule.within_72h
        return rule.default
    if isinstance(rule, PostOpDayRule):
        return rule.buckets.get(post_op_bucket(context.additional_info), rule.default)
    raise TypeError(f"Unknown variant rule: {rule!r}")


def select_model_variant(context: ModelContext, cfg=None) -> Optional[str]:
    """Normalized model code for the context, or None when no model applies."""
    rule = VARIANT_TABLE.get((context.drug, context.indication))
    if rule is None:
        return None
    return normalize_model_code(choose_variant(rule, context, cfg))


def model_context_for_case(case, now: Optional[datetime] = None) -> ModelContext:
    last_dose = max((d.timestamp for d in case.doses), default=None)
    if now is None:
        now = datetime.now(last_dose.tzinfo if last_dose is not None else None)
    return ModelContext(
        drug=Drug.parse(case.target.drug_name),
        indication=Indication.parse(case.target.indication),
        additional_info=case.target.additional_info,
        renal_replacement=case.renal.renal_replacement if is_crrt(case.renal) else "",
        hours_since_last_dose=hours_between(now, last_dose) if last_dose is not None else None,
    )


def resolve_model_name(case, now: Optional[datetime] = None, cfg=None) -> Optional[str]:
    return select_model_variant(model_context_for_case(case, now), cfg)
