"""HTTP client for the external forecasting evaluator."""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tdm_engine.config import EngineConfig
from tdm_engine.exceptions import EvaluatorBusyError, EvaluatorError, EvaluatorResponseError


logger = logging.getLogger(__name__)


class ConcentrationPoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    time: float
    value: float = Field(alias="IPRED")


class EvaluatorResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    auc_before: Optional[float] = Field(default=None, alias="AUC_before")
    cmax_before: Optional[float] = Field(default=None, alias="CMAX_before")
    ctrough_before: Optional[float] = Field(default=None, alias="CTROUGH_before")
    auc_after: Optional[float] = Field(default=None, alias="AUC_after")
    cmax_after: Optional[float] = Field(default=None, alias="CMAX_after")
    ctrough_after: Optional[float] = Field(default=None, alias="CTROUGH_after")
    ipred_conc: List[ConcentrationPoint] = Field(default_factory=list, alias="IPRED_CONC")
    pred_conc: List[ConcentrationPoint] = Field(default_factory=list, alias="PRED_CONC")
    steady_state: Optional[bool] = Field(default=None, alias="Steady_state")

    @model_validator(mode="before")
    @classmethod
    def _auc_tau_alias(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            for suffix in ("before", "after"):
                if data.get(f"AUC_{suffix}") is None and data.get(f"AUCtau_{suffix}") is not None:
                    data[f"AUC_{suffix}"] = data[f"AUCtau_{suffix}"]
        return data

    def metric_after(self, name: str) -> Optional[float]:
        return {"auc": self.auc_after, "cmax": self.cmax_after, "trough": self.ctrough_after}.get(name)


class EvaluatorClient:
    """POSTs request bodies to the evaluator and parses its answers.

    Busy answers (429/503 by default) are retried with capped exponential
    backoff; everything else fails on the first attempt.

    Each evaluate() call opens its own session from session_factory, so one
    client can serve concurrent candidate evaluations.
    """

    def __init__(self, cfg=None, session_factory=requests.Session, sleep=time.sleep):
        self.cfg = cfg or EngineConfig()
        self._session_factory = session_factory
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.cfg.backoff_cap_s, self.cfg.backoff_base_s * (2 ** attempt))

    def evaluate(self, body: dict) -> EvaluatorResult:
        session = self._session_factory()
        try:
            return self._evaluate(session, body)
        finally:
            session.close()

    def _evaluate(self, session, body: dict) -> EvaluatorResult:
        cfg = self.cfg
        attempts = max(1, cfg.evaluator_max_attempts)
        status = None
        for attempt in range(attempts):
            try:
                response = session.post(cfg.evaluator_url, json=body, timeout=cfg.evaluator_timeout_s)
            except requests.RequestException as exc:
                raise EvaluatorError(f"Evaluator request failed: {exc}") from exc

            status = response.status_code
            if status in cfg.busy_status_codes:
                if attempt + 1 < attempts:
                    delay = self.backoff(attempt)
                    logger.warning("Evaluator busy (HTTP %s), retry %d/%d in %.2fs", status, attempt + 1, attempts - 1, delay)
                    self._sleep(delay)
                continue
            if status >= 400:
                raise EvaluatorError(f"Evaluator error: HTTP {status}", status_code=status)
            return self._parse(response)

        raise EvaluatorBusyError(f"Evaluator busy after {attempts} attempts", status_code=status, attempts=attempts)

    def _parse(self, response) -> EvaluatorResult:
        try:
            data = response.json()
        except ValueError as exc:
            raise EvaluatorResponseError("Evaluator returned a non-JSON body") from exc
        try:
            return EvaluatorResult.model_validate(data)
        except ValidationError as exc:
            raise EvaluatorResponseError("Evaluator response does not match the contract", details={"errors": exc.errors(include_context=False, include_input=False)}) from exc
