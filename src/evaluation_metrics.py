"""
evaluation_metrics.py

Evaluation utilities for a traversability layer produced by the step filter.

Inputs:
- grid: GridMap holding the traversability layer, values in [0..1] or NaN

Outputs:
- metrics dict (JSON-serializable) + optional report printing

Dependencies:
- numpy, scipy (connected components of traversable space)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from scipy.ndimage import label

from grid_map import GridMap


@dataclass
class EvaluationConfig:
    # score <= blocked_threshold is a blocked cell
    blocked_threshold: float = 0.0
    # score >= safe_threshold is a safe cell
    safe_threshold: float = 0.9
    # score > traversable_threshold counts as traversable for connectivity
    traversable_threshold: float = 0.0
    # 4- or 8-connectivity for component labelling
    connectivity: int = 8

    score_percentiles: Tuple[float, float, float] = (10.0, 50.0, 90.0)


class TraversabilityEvaluator:
    def __init__(self, cfg: Optional[EvaluationConfig] = None) -> None:
        self.cfg = cfg or EvaluationConfig()

    # ----------------------------
    # Public API
    # ----------------------------
    def evaluate(self, grid: GridMap, layer: str) -> Dict[str, Any]:
        scores = grid.get(layer)
        H, W = scores.shape
        n = H * W

        known = np.isfinite(scores)
        n_known = int(known.sum())
        vals = scores[known].astype(float)

        metrics: Dict[str, Any] = {
            "basic": {
                "layer": layer,
                "map_shape": [int(H), int(W)],
                "resolution": float(grid.resolution),
                "num_cells": int(n),
                "known_ratio": float(n_known / n),
                "unknown_ratio": float((n - n_known) / n),
            }
        }

        metrics["scores"] = {
            "mean": float(np.mean(vals)) if n_known else None,
            "min": float(np.min(vals)) if n_known else None,
            "max": float(np.max(vals)) if n_known else None,
            "p10_p50_p90": self._percentiles(vals, self.cfg.score_percentiles) if n_known else None,
            "blocked_ratio": float(np.mean(vals <= self.cfg.blocked_threshold)) if n_known else None,
            "safe_ratio": float(np.mean(vals >= self.cfg.safe_threshold)) if n_known else None,
        }

        metrics["connectivity"] = self._component_metrics(scores)
        return metrics

    def save_json(self, metrics: Dict[str, Any], out_path: Path) -> None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "w") as f:
            json.dump(metrics, f, indent=2)

    def print_report(self, metrics: Dict[str, Any]) -> None:
        b = metrics.get("basic", {})
        s = metrics.get("scores", {})
        c = metrics.get("connectivity", {})

        print("\n========== TRAVERSABILITY REPORT ==========")
        print(f"- Layer: {b.get('layer')} | map shape: {b.get('map_shape')} | resolution={b.get('resolution')}")
        print(f"- Known ratio: {b.get('known_ratio'):.3f} | unknown ratio: {b.get('unknown_ratio'):.3f}")
        if s and s.get("mean") is not None:
            print(f"- Score mean={s.get('mean'):.3f} min={s.get('min'):.3f} max={s.get('max'):.3f}")
            print(f"- Score p10/p50/p90: {s.get('p10_p50_p90')}")
            print(f"- Blocked ratio: {s.get('blocked_ratio'):.3f} | safe ratio: {s.get('safe_ratio'):.3f}")
        if c:
            print(f"- Traversable components: {c.get('num_components')} | largest_component_ratio={c.get('largest_component_ratio')}")
        print("===========================================\n")

    # ----------------------------
    # Metric blocks
    # ----------------------------
    def _component_metrics(self, scores: np.ndarray) -> Dict[str, Any]:
        traversable = np.isfinite(scores) & (np.nan_to_num(scores, nan=-1.0) > self.cfg.traversable_threshold)
        n_trav = int(traversable.sum())
        if n_trav == 0:
            return {"num_components": 0, "largest_component_ratio": None, "traversable_cells": 0}

        if int(self.cfg.connectivity) == 4:
            structure = np.array([[0, 1, 0], [1, 1, 1], [0, 1, 0]], dtype=bool)
        else:
            structure = np.ones((3, 3), dtype=bool)

        labels, num = label(traversable, structure=structure)
        sizes = np.bincount(labels.ravel())[1:]

        return {
            "num_components": int(num),
            "largest_component_ratio": float(sizes.max() / n_trav),
            "traversable_cells": n_trav,
        }

    @staticmethod
    def _percentiles(arr: np.ndarray, ps: Tuple[float, float, float]) -> List[float]:
        a = np.asarray(arr, dtype=float)
        return [float(np.percentile(a, p)) for p in ps]
