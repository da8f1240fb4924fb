from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("numpy")

from tdm_engine.model_selector import ModelContext, normalize_model_code, resolve_model_name, select_model_variant
from tdm_engine.records import (
    DoseEvent,
    Drug,
    Indication,
    Patient,
    RenalAssessment,
    Sex,
    TargetSpec,
    TdmCase,
)


def _vanco(indication, **kw):
    return ModelContext(drug=Drug.Vancomycin, indication=indication, **kw)


def test_crrt_wins_irrespective_of_recent_dose():
    ctx = _vanco(Indication.not_specified, renal_replacement="crrt", hours_since_last_dose=10)
    assert select_model_variant(ctx) == "vancomycin1_2"


def test_no_crrt_gives_default_variant():
    ctx = _vanco(Indication.not_specified, renal_replacement="HD", hours_since_last_dose=10)
    assert select_model_variant(ctx) == "vancomycin1_1"


def test_neurosurgical_within_72h():
    assert select_model_variant(_vanco(Indication.neurosurgical, hours_since_last_dose=50)) == "vancomycin2_2"
    assert select_model_variant(_vanco(Indication.neurosurgical, hours_since_last_dose=72)) == "vancomycin2_2"


def test_neurosurgical_beyond_72h_or_no_history_gives_default():
    assert select_model_variant(_vanco(Indication.neurosurgical, hours_since_last_dose=80)) == "vancomycin2_1"
    assert select_model_variant(_vanco(Indication.neurosurgical)) == "vancomycin2_1"


@pytest.mark.parametrize(
    "info, expected",
    [
        ("POD ~2", "cyclosporin1_1"),
        ("POD 3~6", "cyclosporin1_2"),
        ("7~", "cyclosporin1_3"),
        ("", "cyclosporin1_1"),
        ("day ten", "cyclosporin1_1"),
    ],
)
def test_post_op_day_buckets(info, expected):
    ctx = ModelContext(drug=Drug.Cyclosporin, indication=Indication.renal_transplant, additional_info=info)
    assert select_model_variant(ctx) == expected


def test_fixed_variants():
    assert select_model_variant(ModelContext(Drug.Cyclosporin, Indication.allo_hsct)) == "cyclosporin2"
    assert select_model_variant(ModelContext(Drug.Cyclosporin, Indication.thoracic_transplant)) == "cyclosporin3"


def test_unknown_pairs_have_no_model():
    assert select_model_variant(ModelContext(Drug.Vancomycin, Indication.allo_hsct)) is None
    assert select_model_variant(ModelContext(None, Indication.neurosurgical)) is None


def test_code_normalization():
    assert normalize_model_code("Vancomycin1-2") == "vancomycin1_2"
    assert normalize_model_code("Cyclosporin3") == "cyclosporin3"
    assert normalize_model_code("A-b-C") == "a_b_C"
    assert normalize_model_code("") == ""


def test_resolve_model_name_from_case_uses_last_dose_and_now():
    now = datetime(2025, 5, 10, 12, 0)
    case = TdmCase(
        patient_id="P1",
        patient=Patient(70, 60, Sex.male, 170),
        target=TargetSpec(drug_name="vancomycin", indication="Neurosurgical patients/Korean"),
        doses=(
            DoseEvent(now - timedelta(hours=110), 1000),
            DoseEvent(now - timedelta(hours=50), 1000),
        ),
    )
    assert resolve_model_name(case, now=now) == "vancomycin2_2"
    assert resolve_model_name(case, now=now + timedelta(hours=30)) == "vancomycin2_1"


def test_resolve_model_name_reads_crrt_from_renal_assessment():
    case = TdmCase(
        patient_id="P2",
        patient=Patient(70, 60, Sex.male, 170),
        target=TargetSpec(drug_name="Vancomycin", indication="Not specified/Korean"),
        renal=RenalAssessment(dialysis=True, renal_replacement="CRRT"),
    )
    assert resolve_model_name(case, now=datetime(2025, 1, 1)) == "vancomycin1_2"


def test_resolve_model_name_with_offset_aware_doses_and_no_now():
    recent = datetime.now(timezone.utc) - timedelta(hours=6)
    case = TdmCase(
        patient_id="P3",
        patient=Patient(70, 60, Sex.male, 170),
        target=TargetSpec(drug_name="Vancomycin", indication="Neurosurgical patients/Korean"),
        doses=(DoseEvent(recent, 1000),),
    )
    assert resolve_model_name(case) == "vancomycin2_2"
