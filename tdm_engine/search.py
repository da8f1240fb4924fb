"""Dose candidate search against the external evaluator."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, List, Optional

from tdm_engine.config import EngineConfig
from tdm_engine.dataset import RegimenOverride, build_payload, last_observed_trough, resolve_regimens
from tdm_engine.model_selector import resolve_model_name
from tdm_engine.records import CandidateRegimen, Drug, TargetType, TdmCase
from tdm_engine.targets import distance_to_range, to_target_units


logger = logging.getLogger(__name__)

ORAL_SOLID_FORMS = ("capsule", "tablet", "cap", "tab")


class ScoreBasis(str, Enum):
    target_range = "target_range"
    last_trough_no_range = "last_trough_no_range"
    last_trough_no_target_type = "last_trough_no_target_type"


@dataclass
class SearchResult:
    top: List[CandidateRegimen]
    candidates: List[CandidateRegimen]
    basis: ScoreBasis
    baseline: float
    step: float
    model_name: Optional[str] = None


def step_size_for(drug_name, dosage_form="", cfg=None) -> float:
    cfg = cfg or EngineConfig()
    drug = Drug.parse(drug_name)
    form = (dosage_form or "").lower()
    if drug is not None and drug.is_transplant_drug and any(f in form for f in ORAL_SOLID_FORMS):
        return cfg.transplant_oral_step
    return cfg.default_step


def generate_candidates(baseline: float, step: float, cfg=None) -> List[float]:
    """Baseline +/- 1..3 steps, clamped to the minimum amount, duplicates dropped."""
    cfg = cfg or EngineConfig()
    amounts = []
    for k in cfg.candidate_offsets:
        amount = max(cfg.min_candidate_amount, baseline + k * step)
        if amount not in amounts:
            amounts.append(amount)
    return amounts


def score_basis(spec) -> ScoreBasis:
    if spec.target_type is None:
        return ScoreBasis.last_trough_no_target_type
    if not spec.has_range:
        return ScoreBasis.last_trough_no_range
    return ScoreBasis.target_range


def score_result(result, spec, basis: ScoreBasis, last_trough=None):
    """(score, predicted) for one evaluator result. Lower is better."""
    if basis is ScoreBasis.target_range:
        metric = {TargetType.AUC: "auc", TargetType.Trough: "trough", TargetType.Peak: "cmax"}[spec.target_type]
        predicted = to_target_units(result.metric_after(metric), spec)
        if predicted is None:
            return float("inf"), None
        return distance_to_range(predicted, spec), predicted

    predicted = result.ctrough_after
    if predicted is None:
        return float("inf"), None
    if last_trough is None:
        return 0.0, predicted
    return abs(predicted - last_trough), predicted


def rank_candidates(candidates: List[CandidateRegimen], top_n: int = 3) -> List[CandidateRegimen]:
    best = sorted(candidates, key=lambda c: (c.score, c.amount))[:top_n]
    return sorted(best, key=lambda c: c.amount)


def search_regimens(case: TdmCase, evaluator, cfg=None, baseline=None, step=None, tau=None, now=None) -> SearchResult:
    """Score dose candidates around the baseline and keep the best few.

    Every candidate is evaluated concurrently; a failing evaluation scores
    +inf and never aborts the others.
    """
    cfg = cfg or EngineConfig()
    if baseline is None:
        before, _ = resolve_regimens(case)
        baseline = before.amount if before.amount is not None else cfg.fallback_amount
    if step is None:
        step = step_size_for(case.target.drug_name, case.dosage_form, cfg)

    model_name = resolve_model_name(case, now, cfg)
    basis = score_basis(case.target)
    last_trough = last_observed_trough(case) if basis is not ScoreBasis.target_range else None
    amounts = generate_candidates(baseline, step, cfg)

    def evaluate(amount):
        payload = build_payload(case, cfg, model_name=model_name, after_override=RegimenOverride(amount=amount, tau=tau))
        return evaluator.evaluate(payload.to_request(cfg))

    candidates = []
    with ThreadPoolExecutor(max_workers=len(amounts)) as pool:
        futures = {pool.submit(evaluate, amount): amount for amount in amounts}
        wait(futures)

    for future, amount in futures.items():
        exc = future.exception()
        if exc is not None:
            logger.warning("Candidate %s failed: %s", amount, exc)
            candidates.append(CandidateRegimen(amount=amount, error=str(exc)))
            continue
        result = future.result()
        score, predicted = score_result(result, case.target, basis, last_trough)
        candidates.append(CandidateRegimen(amount=amount, score=score, predicted=predicted, result=result))

    candidates.sort(key=lambda c: c.amount)
    return SearchResult(
        top=rank_candidates(candidates, cfg.top_n),
        candidates=candidates,
        basis=basis,
        baseline=baseline,
        step=step,
        model_name=model_name,
    )


def apply_regimen(case: TdmCase, evaluator, amount=None, tau=None, cfg=None, now=None):
    """Forecast one regimen. Evaluator failures propagate to the caller."""
    cfg = cfg or EngineConfig()
    payload = build_payload(
        case,
        cfg,
        model_name=resolve_model_name(case, now, cfg),
        after_override=RegimenOverride(amount=amount, tau=tau),
    )
    return payload, evaluator.evaluate(payload.to_request(cfg))


class LatestRequestGate:
    """Lets only the most recently started request per key publish a result."""

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Dict[Hashable, int] = {}
        self._results: Dict[Hashable, object] = {}

    def begin(self, key) -> int:
        with self._lock:
            token = self._latest.get(key, 0) + 1
            self._latest[key] = token
            return token

    def is_current(self, key, token: int) -> bool:
        with self._lock:
            return self._latest.get(key) == token

    def publish(self, key, token: int, value) -> bool:
        with self._lock:
            if self._latest.get(key) != token:
                return False
            self._results[key] = value
            return True

    def result(self, key):
        with self._lock:
            return self._results.get(key)


@dataclass
class SearchSession:
    evaluator: object
    cfg: EngineConfig = field(default_factory=EngineConfig)
    gate: LatestRequestGate = field(default_factory=LatestRequestGate)

    def search(self, key, case: TdmCase, **kwargs) -> Optional[SearchResult]:
        """Run a search; None when a newer search for the same key superseded it."""
        token = self.gate.begin(key)
        result = search_regimens(case, self.evaluator, self.cfg, **kwargs)
        if self.gate.publish(key, token, result):
            return result
        logger.info("Discarding superseded search result for %r", key)
        return None
