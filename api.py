from __future__ import annotations

import math
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from tdm_engine.config import EngineConfig
from tdm_engine.dataset import build_payload
from tdm_engine.evaluator import EvaluatorClient
from tdm_engine.exceptions import DatasetError, EvaluatorError
from tdm_engine.logging_utils import setup_logging
from tdm_engine.model_selector import ModelContext, hours_between, resolve_model_name, select_model_variant
from tdm_engine.records import (
    DoseEvent,
    Drug,
    Indication,
    ObservationEvent,
    Patient,
    RenalAssessment,
    RenalFormula,
    Route,
    Sex,
    TdmCase,
)
from tdm_engine.renal import InMemoryRenalAssessmentRepository, estimate_renal_function
from tdm_engine.search import apply_regimen, search_regimens
from tdm_engine.targets import build_target_spec, classify, deviation_percent, predicted_value, to_target_units
from tdm_engine.timeseries import display_scale, mean_concentration, series_from_result


setup_logging()

app = FastAPI(title="TDM Dosing Engine API")


def _local_naive(value: Optional[datetime]) -> Optional[datetime]:
    # Offset-aware inputs ("...Z") become naive local wall time, like datetime.now().
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class PatientIn(BaseModel):
    weight: float = Field(gt=0)
    age: float = Field(ge=0)
    sex: Sex
    height: float = Field(default=0, ge=0)

    def to_record(self) -> Patient:
        return Patient(weight=self.weight, age=self.age, sex=self.sex, height=self.height)


class RenalAssessmentIn(BaseModel):
    creatinine: Optional[str] = None
    formula: str = "cockcroft-gault"
    dialysis: bool = False
    renal_replacement: str = ""
    result: Optional[str] = None
    is_selected: bool = False
    recorded_at: Optional[datetime] = None

    def to_record(self) -> RenalAssessment:
        return RenalAssessment(
            serum_creatinine=self.creatinine,
            formula=RenalFormula.parse(self.formula),
            dialysis=self.dialysis,
            renal_replacement=self.renal_replacement,
            result_override=self.result,
            selected=self.is_selected,
            recorded_at=_local_naive(self.recorded_at),
        )


class DoseIn(BaseModel):
    timestamp: datetime
    amount: float = Field(ge=0)
    route: str = "iv"
    infusion_minutes: Optional[float] = None


class ObservationIn(BaseModel):
    timestamp: datetime
    concentration: float = Field(ge=0)
    unit: str = "mg/L"


class PrescriptionIn(BaseModel):
    drug_name: str
    indication: str = ""
    additional_info: str = ""
    tdm_target: Optional[str] = None
    tdm_target_value: Optional[str] = None
    route: Optional[str] = None
    dosage_form: str = ""


class CaseIn(BaseModel):
    patient_id: str
    patient: PatientIn
    prescription: PrescriptionIn
    doses: List[DoseIn] = Field(default_factory=list)
    observations: List[ObservationIn] = Field(default_factory=list)
    renal_assessments: List[RenalAssessmentIn] = Field(default_factory=list)

    def to_case(self) -> TdmCase:
        rx = self.prescription
        repo = InMemoryRenalAssessmentRepository(a.to_record() for a in self.renal_assessments)
        return TdmCase(
            patient_id=self.patient_id,
            patient=self.patient.to_record(),
            target=build_target_spec(rx.drug_name, rx.indication, rx.additional_info, rx.tdm_target, rx.tdm_target_value),
            doses=tuple(
                DoseEvent(_local_naive(d.timestamp), d.amount, Route.parse(d.route), d.infusion_minutes) for d in self.doses
            ),
            observations=tuple(ObservationEvent(_local_naive(o.timestamp), o.concentration, o.unit) for o in self.observations),
            renal=repo.chosen(),
            route=Route.parse(rx.route) if rx.route else None,
            dosage_form=rx.dosage_form,
        )


class RenalFunctionIn(BaseModel):
    patient: PatientIn
    assessments: List[RenalAssessmentIn] = Field(default_factory=list)


class ModelVariantIn(BaseModel):
    drug_name: str
    indication: str
    additional_info: str = ""
    renal_replacement: str = ""
    last_dose_at: Optional[datetime] = None


class ForecastIn(BaseModel):
    case: CaseIn
    amount: Optional[float] = Field(default=None, gt=0)
    tau: Optional[float] = Field(default=None, gt=0)


class SearchIn(BaseModel):
    case: CaseIn
    baseline: Optional[float] = Field(default=None, gt=0)
    step: Optional[float] = Field(default=None, gt=0)
    tau: Optional[float] = Field(default=None, gt=0)


def get_evaluator():
    return EvaluatorClient(EngineConfig.from_env())


def _finite(value):
    if value is None or math.isinf(value):
        return None
    return value


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/renal-function")
def renal_function(payload: RenalFunctionIn):
    repo = InMemoryRenalAssessmentRepository(a.to_record() for a in payload.assessments)
    p = payload.patient
    renal = estimate_renal_function(p.weight, p.age, p.sex, p.height, repo.chosen())
    return {"metric": renal.metric.value, "value": renal.value}


@app.post("/model-variant")
def model_variant(payload: ModelVariantIn):
    context = ModelContext(
        drug=Drug.parse(payload.drug_name),
        indication=Indication.parse(payload.indication),
        additional_info=payload.additional_info,
        renal_replacement=payload.renal_replacement,
        hours_since_last_dose=(
            hours_between(datetime.now(payload.last_dose_at.tzinfo), payload.last_dose_at)
            if payload.last_dose_at
            else None
        ),
    )
    return {"model_name": select_model_variant(context)}


@app.post("/dataset")
def dataset(payload: CaseIn):
    case = payload.to_case()
    try:
        body = build_payload(case, model_name=resolve_model_name(case))
    except DatasetError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())
    return body.to_request()


@app.post("/forecast")
def forecast(payload: ForecastIn, evaluator: EvaluatorClient = Depends(get_evaluator)):
    case = payload.case.to_case()
    try:
        request_body, result = apply_regimen(case, evaluator, amount=payload.amount, tau=payload.tau, cfg=evaluator.cfg)
    except DatasetError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())
    except EvaluatorError as exc:
        raise HTTPException(status_code=502, detail=exc.to_dict())

    spec = case.target
    value = to_target_units(predicted_value(spec, result.auc_after, result.cmax_after, result.ctrough_after), spec)
    points = series_from_result(result, request_body.dataset, drug_name=spec.drug_name)
    return {
        "model_name": request_body.model_name,
        "result": result.model_dump(by_alias=True),
        "target_value": value,
        "target_status": classify(value, spec).value,
        "deviation_percent": _finite(deviation_percent(value, spec)),
        "average_concentration": mean_concentration(result.ipred_conc, scale=display_scale(spec.drug_name)),
        "series": [
            {"time": p.time, "predicted": p.predicted, "observed": p.observed, "reference": p.reference}
            for p in points
        ],
    }


@app.post("/regimen-search")
def regimen_search(payload: SearchIn, evaluator: EvaluatorClient = Depends(get_evaluator)):
    case = payload.case.to_case()
    result = search_regimens(
        case, evaluator, cfg=evaluator.cfg, baseline=payload.baseline, step=payload.step, tau=payload.tau
    )

    def candidate_out(c):
        return {"amount": c.amount, "score": _finite(c.score), "predicted": c.predicted, "error": c.error}

    return {
        "model_name": result.model_name,
        "basis": result.basis.value,
        "baseline": result.baseline,
        "step": result.step,
        "top": [candidate_out(c) for c in result.top],
        "candidates": [candidate_out(c) for c in result.candidates],
    }
