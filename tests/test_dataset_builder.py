from datetime import datetime, timedelta

import pytest

pytest.importorskip("pandas")

from tdm_engine.dataset import (
    DATASET_COLUMNS,
    RegimenOverride,
    build_payload,
    concentration_to_mg_l,
    dataset_frame,
    infer_tau,
    toxicity_flag,
)
from tdm_engine.records import (
    DoseEvent,
    ObservationEvent,
    Patient,
    RenalAssessment,
    RenalFormula,
    Route,
    Sex,
    TargetSpec,
    TargetType,
    TdmCase,
)


T0 = datetime(2025, 4, 1, 8, 0)


def _case(doses=(), observations=(), target=None, **kw):
    return TdmCase(
        patient_id="P001",
        patient=Patient(weight=70.0, age=50, sex=Sex.male, height=175.0),
        target=target or TargetSpec(drug_name="Vancomycin", indication="Not specified/Korean"),
        doses=tuple(doses),
        observations=tuple(observations),
        **kw,
    )


def _history():
    return [
        DoseEvent(T0 + timedelta(hours=12), 1000.0, Route.iv, 60),
        DoseEvent(T0, 1000.0, Route.iv, 60),
        DoseEvent(T0 + timedelta(hours=24), 1250.0, Route.iv, 120),
    ]


def test_no_doses_synthesizes_single_dose_row():
    payload = build_payload(_case(), after_override=RegimenOverride(amount=500))
    doses = [r for r in payload.dataset if r.EVID == 1]
    assert len(doses) == 1
    assert doses[0].TIME == 0.0 and doses[0].AMT == 500 and doses[0].DV is None


def test_no_observations_synthesizes_null_observation():
    payload = build_payload(_case())
    obs = [r for r in payload.dataset if r.EVID == 0]
    assert len(obs) == 1
    assert obs[0].DV is None
    assert obs[0].TIME == 2.0


def test_synthetic_observation_sits_at_tau():
    payload = build_payload(_case(doses=_history()[:2]))
    obs = [r for r in payload.dataset if r.EVID == 0]
    assert obs[0].TIME == 12.0


def test_dose_rows_are_time_ordered_and_anchored():
    payload = build_payload(_case(doses=_history()))
    doses = [r for r in payload.dataset if r.EVID == 1]
    assert [r.TIME for r in doses] == [0.0, 12.0, 24.0]
    assert [r.RATE for r in doses] == [1000.0, 1000.0, 625.0]
    assert all(r.CMT == 1 and r.DV is None for r in doses)


def test_before_and_after_regimens():
    payload = build_payload(_case(doses=_history()))
    assert (payload.before.amount, payload.before.tau, payload.before.rate) == (1250.0, 12.0, 625.0)
    assert payload.after == payload.before

    adjusted = build_payload(_case(doses=_history()), after_override=RegimenOverride(amount=1500, tau=8))
    assert (adjusted.after.amount, adjusted.after.tau) == (1500, 8)
    assert adjusted.after.rate == pytest.approx(750.0)
    assert adjusted.before.amount == 1250.0


def test_infer_tau_needs_two_doses():
    assert infer_tau(_history()[:1]) is None
    assert infer_tau([]) is None
    assert infer_tau(_history()) == 12.0


def test_observations_are_converted_to_mg_per_l():
    observations = [
        ObservationEvent(T0 + timedelta(hours=30), 250.0, "ng/mL"),
        ObservationEvent(T0 + timedelta(hours=23, minutes=30), 11.5, "mg/L"),
    ]
    payload = build_payload(_case(doses=_history(), observations=observations))
    obs = [r for r in payload.dataset if r.EVID == 0]
    assert [(r.TIME, r.DV) for r in obs] == [(23.5, 11.5), (30.0, 0.25)]
    assert all(r.AMT == 0 and r.RATE == 0 for r in obs)


def test_observation_before_first_dose_is_clamped():
    observations = [ObservationEvent(T0 - timedelta(hours=1), 3.0, "mg/L")]
    payload = build_payload(_case(doses=_history(), observations=observations))
    obs = [r for r in payload.dataset if r.EVID == 0]
    assert obs[0].TIME == 0.0 and obs[0].DV == 3.0


def test_oral_doses_use_depot_compartment():
    doses = [DoseEvent(T0, 100.0, Route.oral, 30), DoseEvent(T0 + timedelta(hours=12), 100.0, Route.oral)]
    payload = build_payload(_case(doses=doses))
    assert all(r.CMT == 2 for r in payload.dataset)
    assert all(r.RATE == 0 for r in payload.dataset)
    assert payload.before.cmt == 2


def test_covariate_snapshot_is_shared():
    case = _case(doses=_history(), renal=RenalAssessment(serum_creatinine="1.2", formula=RenalFormula.ckd_epi))
    payload = build_payload(case)
    snapshots = {(r.WT, r.SEX, r.AGE, r.CRCL, r.EGFR, r.TOXI) for r in payload.dataset}
    assert len(snapshots) == 1
    (wt, sex, age, crcl, egfr, toxi), = snapshots
    assert (wt, sex, age, toxi) == (70.0, 1, 50, 0)
    assert crcl is None and egfr == pytest.approx(payload.renal.value)


@pytest.mark.parametrize(
    "indication, info, expected",
    [
        ("Neurosurgical patients/Korean", "Nephrotoxic drugs including aminoglycosides (amikacin and tobramycin)", 1),
        ("Neurosurgical patients/Korean", "Tacrolimus", 1),
        ("Neurosurgical patients/Korean", "Trimethoprim/sulfamethoxazole", 1),
        ("Neurosurgical patients/Korean", "none", 0),
        ("Neurosurgical patients/Korean", "other", 0),
        ("Neurosurgical patients/Korean", "", 0),
        ("Not specified/Korean", "Tacrolimus", 0),
    ],
)
def test_toxicity_flag(indication, info, expected):
    assert toxicity_flag(TargetSpec("Vancomycin", indication, info)) == expected


def test_toxicity_flag_only_for_vancomycin():
    assert toxicity_flag(TargetSpec("Cyclosporin", "Neurosurgical patients/Korean", "Tacrolimus")) == 0


def test_request_body_wire_format():
    payload = build_payload(_case(doses=_history()), model_name="vancomycin1_1")
    body = payload.to_request()
    assert body["input_CRCL"] == 90.0 and "input_EGFR" not in body
    assert body["input_SEX"] == 1
    assert body["input_tau_before"] == 12.0 and body["input_amount_before"] == 1250.0
    assert body["input_cmt_after"] == 1
    assert body["model_name"] == "vancomycin1_1"
    assert list(body["dataset"][0].keys()) == DATASET_COLUMNS


def test_request_body_fallbacks_without_history():
    body = build_payload(_case()).to_request()
    assert body["input_amount_before"] == 100.0
    assert body["input_tau_after"] == 12.0
    assert "model_name" not in body


def test_builder_is_idempotent():
    case = _case(doses=_history(), observations=[ObservationEvent(T0 + timedelta(hours=35), 9.0)])
    assert build_payload(case) == build_payload(case)


def test_dataset_frame_columns_match_exactly():
    df = dataset_frame(build_payload(_case(doses=_history())).dataset)
    assert list(df.columns) == DATASET_COLUMNS
    assert len(df) == 4


def test_concentration_units():
    assert concentration_to_mg_l(250, "ng/mL") == pytest.approx(0.25)
    assert concentration_to_mg_l(12, "mg/L") == 12
    assert concentration_to_mg_l(12, "µg/mL") == 12
    assert concentration_to_mg_l(7, "furlongs") == 7


def test_request_body_carries_single_regimen_fields():
    payload = build_payload(_case(doses=_history()), after_override=RegimenOverride(amount=1500, tau=8))
    body = payload.to_request()
    assert (body["input_amount"], body["input_tau"]) == (1500, 8)
    assert (body["input_amount_before"], body["input_tau_before"]) == (1250.0, 12.0)

    fallback = build_payload(_case()).to_request()
    assert (fallback["input_amount"], fallback["input_tau"]) == (100.0, 12.0)


@pytest.mark.parametrize(
    "target_type, low, high, key, value",
    [
        (TargetType.Trough, 10.0, 20.0, "input_CTROUGH", 15.0),
        (TargetType.AUC, 400.0, 600.0, "input_AUC", 500.0),
        (TargetType.Trough, 15.0, None, "input_CTROUGH", 15.0),
    ],
)
def test_request_body_sends_target_midpoint(target_type, low, high, key, value):
    target = TargetSpec("Vancomycin", "Not specified/Korean", target_type=target_type, range_low=low, range_high=high)
    body = build_payload(_case(doses=_history(), target=target)).to_request()
    assert body[key] == value
    other = "input_AUC" if key == "input_CTROUGH" else "input_CTROUGH"
    assert other not in body


@pytest.mark.parametrize(
    "target",
    [
        TargetSpec("Vancomycin", target_type=TargetType.Peak, range_low=25, range_high=40),
        TargetSpec("Vancomycin", target_type=TargetType.Trough),
        TargetSpec("Vancomycin"),
    ],
)
def test_request_body_omits_target_without_sendable_range(target):
    body = build_payload(_case(doses=_history(), target=target)).to_request()
    assert "input_AUC" not in body and "input_CTROUGH" not in body
