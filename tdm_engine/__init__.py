from tdm_engine.config import EngineConfig
from tdm_engine.dataset import build_payload, dataset_frame
from tdm_engine.evaluator import EvaluatorClient, EvaluatorResult
from tdm_engine.model_selector import resolve_model_name, select_model_variant
from tdm_engine.renal import estimate_renal_function
from tdm_engine.search import LatestRequestGate, SearchSession, apply_regimen, search_regimens
from tdm_engine.targets import build_target_spec, classify
from tdm_engine.timeseries import mean_concentration, merge_series

__all__ = [
    "EngineConfig",
    "estimate_renal_function",
    "select_model_variant",
    "resolve_model_name",
    "build_payload",
    "dataset_frame",
    "build_target_spec",
    "classify",
    "EvaluatorClient",
    "EvaluatorResult",
    "search_regimens",
    "apply_regimen",
    "LatestRequestGate",
    "SearchSession",
    "merge_series",
    "mean_concentration",
]
