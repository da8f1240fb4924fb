"""Merge evaluator and observed concentration series for presentation."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from tdm_engine.records import Drug


SERIES_COLUMNS = ["time", "predicted", "observed", "reference", "comparison"]


@dataclass
class SeriesPoint:
    time: float
    predicted: float = 0.0
    observed: Optional[float] = None
    reference: float = 0.0
    comparison: float = 0.0


def _pairs(series) -> Iterable[tuple]:
    for item in series or ():
        if isinstance(item, dict):
            yield item["time"], item.get("value", item.get("IPRED"))
        elif hasattr(item, "time"):
            yield item.time, item.value
        else:
            yield item[0], item[1]


def display_scale(drug_name) -> float:
    # Cyclosporin is charted in ng/mL, the evaluator speaks mg/L.
    return 1000.0 if Drug.parse(drug_name) is Drug.Cyclosporin else 1.0


def merge_series(predicted=None, reference=None, observed=None, comparison=None, scale=1.0) -> List[SeriesPoint]:
    """Union of the series keyed by time, sorted by time.

    Model series default to 0 at times they do not cover, observed to None.
    """
    points: Dict[float, SeriesPoint] = {}

    def point(t):
        key = float(t or 0.0)
        if key not in points:
            points[key] = SeriesPoint(time=key)
        return points[key]

    for t, v in _pairs(predicted):
        point(t).predicted = float(v or 0.0) * scale
    for t, v in _pairs(reference):
        point(t).reference = float(v or 0.0) * scale
    for t, v in _pairs(observed):
        point(t).observed = None if v is None else float(v) * scale
    for t, v in _pairs(comparison):
        point(t).comparison = float(v or 0.0) * scale

    return sorted(points.values(), key=lambda p: p.time)


def mean_concentration(predicted, scale=1.0) -> Optional[float]:
    """Time-weighted average of the predicted series (trapezoidal AUC / span).

    Takes the predicted series itself; observation-only times never enter it.
    """
    ordered = sorted((float(t), float(v or 0.0)) for t, v in _pairs(predicted))
    if len(ordered) < 2:
        return None
    t = np.array([p[0] for p in ordered], dtype=float)
    c = np.array([p[1] for p in ordered], dtype=float) * scale
    duration = t[-1] - t[0]
    if duration <= 0:
        return None
    auc = float(np.sum((c[1:] + c[:-1]) / 2.0 * np.diff(t)))
    return auc / duration


def observed_from_dataset(rows) -> List[tuple]:
    """(TIME, DV) for every observation row that carries a measurement."""
    return [(r.TIME, r.DV) for r in rows if r.EVID == 0 and r.DV is not None]


def series_from_result(result, dataset_rows=(), comparison=None, drug_name=None) -> List[SeriesPoint]:
    return merge_series(
        predicted=result.ipred_conc,
        reference=result.pred_conc,
        observed=observed_from_dataset(dataset_rows),
        comparison=comparison,
        scale=display_scale(drug_name),
    )


def series_frame(points: List[SeriesPoint]) -> pd.DataFrame:
    return pd.DataFrame([asdict(p) for p in points], columns=SERIES_COLUMNS)
