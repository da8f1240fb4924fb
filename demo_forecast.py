"""Post a sample vancomycin case to a running API and print the results.

Usage:
    uvicorn api:app --port 8000
    python demo_forecast.py [--base http://localhost:8000] [--search]
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta

import requests

API_BASE = "http://localhost:8000"


def make_case(patient_id: str = "VAN001") -> dict:
    first = datetime.now().replace(minute=0, second=0, microsecond=0) - timedelta(hours=36)
    return {
        "patient_id": patient_id,
        "patient": {"weight": 70, "age": 58, "sex": "male", "height": 172},
        "prescription": {
            "drug_name": "Vancomycin",
            "indication": "Not specified/Korean",
            "tdm_target": "Trough Concentration",
            "tdm_target_value": "10-20 mg/L",
            "route": "iv",
        },
        "doses": [
            {"timestamp": (first + timedelta(hours=12 * i)).isoformat(), "amount": 1000, "route": "iv", "infusion_minutes": 60}
            for i in range(3)
        ],
        "observations": [
            {"timestamp": (first + timedelta(hours=35, minutes=30)).isoformat(), "concentration": 8.7, "unit": "mg/L"}
        ],
        "renal_assessments": [{"creatinine": "1.1", "formula": "ckd-epi", "is_selected": True}],
    }


def run(base: str, search: bool) -> None:
    case = make_case()
    response = requests.post(f"{base}/dataset", json=case, timeout=10)
    response.raise_for_status()
    print("Evaluator request:")
    print(json.dumps(response.json(), indent=2))

    endpoint = "regimen-search" if search else "forecast"
    response = requests.post(f"{base}/{endpoint}", json={"case": case}, timeout=120)
    response.raise_for_status()
    print(f"\n{endpoint}:")
    print(json.dumps(response.json(), indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--base", default=API_BASE)
    parser.add_argument("--search", action="store_true", help="run the dose candidate search instead of a forecast")
    args = parser.parse_args()
    run(args.base, args.search)
