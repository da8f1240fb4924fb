import os
from dataclasses import dataclass


@dataclass
class EngineConfig:
    # Renal function
    default_crcl: float = 90.0
    bsa_reference: float = 1.73

    # Model selection
    recent_dose_window_h: float = 72.0

    # Dataset defaults
    synthetic_observation_time_h: float = 2.0
    fallback_amount: float = 100.0
    fallback_tau_h: float = 12.0

    # Candidate search
    default_step: float = 10.0
    transplant_oral_step: float = 25.0
    candidate_offsets: tuple = (-3, -2, -1, 1, 2, 3)
    min_candidate_amount: float = 1.0
    top_n: int = 3

    # External evaluator
    evaluator_url: str = "http://localhost:8080/tdm"
    evaluator_timeout_s: float = 30.0
    evaluator_max_attempts: int = 4
    backoff_base_s: float = 0.5
    backoff_cap_s: float = 8.0
    busy_status_codes: tuple = (429, 503)

    @classmethod
    def from_env(cls, **overrides):
        env = os.environ
        values = {}
        if env.get("TDM_EVALUATOR_URL"):
            values["evaluator_url"] = env["TDM_EVALUATOR_URL"]
        if env.get("TDM_EVALUATOR_TIMEOUT"):
            values["evaluator_timeout_s"] = float(env["TDM_EVALUATOR_TIMEOUT"])
        if env.get("TDM_EVALUATOR_MAX_ATTEMPTS"):
            values["evaluator_max_attempts"] = int(env["TDM_EVALUATOR_MAX_ATTEMPTS"])
        values.update(overrides)
        return cls(**values)
