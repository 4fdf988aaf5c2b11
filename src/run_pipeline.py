"""
run_pipeline.py

Orchestrates the whole project:
1) Load config.json
2) Generate or load environment (elevation map)
3) Run the step filter (traversability layer)
4) Evaluate the traversability layer (evaluation_metrics.py)
5) Save artifacts + plots
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np

from environment import generator_from_config
from evaluation_metrics import EvaluationConfig, TraversabilityEvaluator
from grid_map import GridMap
from step_filter import ELEVATION_LAYER, PrintObserver, StepFilter, StepFilterConfig
from visualization import TraversabilityVisualizer


# ----------------------------
# Config helpers
# ----------------------------
def load_config(config_path: Path) -> Dict[str, Any]:
    with open(config_path, "r") as f:
        return json.load(f)


def infer_project_root(config_path: Path) -> Path:
    """
    - If config path is project_root/config/config.json -> root is parent of 'config'
    - Else root is config_path.parent
    """
    config_path = config_path.resolve()
    if config_path.parent.name == "config":
        return config_path.parent.parent
    return config_path.parent


def build_step_filter_cfg(cfg: Dict[str, Any]) -> StepFilterConfig:
    block = cfg.get("step_filter", {})
    if not isinstance(block, dict):
        block = {}
    return StepFilterConfig.from_dict(block)


def build_eval_cfg(cfg: Dict[str, Any]) -> EvaluationConfig:
    ec = EvaluationConfig()
    block = cfg.get("evaluation", {})
    if not isinstance(block, dict):
        block = {}

    for k, v in block.items():
        if hasattr(ec, k):
            setattr(ec, k, v)
    return ec


def resolve_under_root(project_root: Path, p: Union[str, Path]) -> Path:
    p = Path(p)
    return p if p.is_absolute() else (project_root / p).resolve()


# ----------------------------
# Environment stage
# ----------------------------
def run_environment(cfg: Dict[str, Any], project_root: Path) -> GridMap:
    map_cfg = cfg.get("map", {})
    vis_cfg = cfg.get("visualization", {})

    use_existing = bool(map_cfg.get("use_existing", True))
    resolution = float(map_cfg.get("resolution", 0.04))
    origin = tuple(map_cfg.get("origin", (0.0, 0.0)))

    elevation_npy_path = resolve_under_root(project_root, vis_cfg.get("elevation_npy_path", "data/elevation_map.npy"))

    if use_existing and elevation_npy_path.exists():
        print(f"[INFO] Using existing elevation map: {elevation_npy_path}")
        elev = np.load(elevation_npy_path)
    else:
        if use_existing:
            print(f"[WARN] elevation map not found at {elevation_npy_path}; generating new one.")
        else:
            print("[INFO] Forced environment regeneration (use_existing=false).")

        env = generator_from_config(cfg)
        elev = env.generate_elevation_map()

        elevation_npy_path.parent.mkdir(parents=True, exist_ok=True)
        np.save(elevation_npy_path, elev)
        print(f"[INFO] Saved elevation map to: {elevation_npy_path}")

    return GridMap.from_elevation(elev, resolution, origin, layer=ELEVATION_LAYER)


# ----------------------------
# Step filter stage
# ----------------------------
def run_step_filter(cfg: Dict[str, Any], project_root: Path, grid: GridMap, verbose: bool = False) -> GridMap:
    sf_cfg = build_step_filter_cfg(cfg)
    print(f"[INFO] StepFilterConfig: {asdict(sf_cfg)}")

    step_filter = StepFilter(sf_cfg, observer=PrintObserver() if verbose else None)
    result = step_filter.update(grid)

    vis_cfg = cfg.get("visualization", {})
    trav_npy_path = resolve_under_root(project_root, vis_cfg.get("traversability_npy_path", "data/traversability_step.npy"))
    trav_npy_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(trav_npy_path, result.get(sf_cfg.map_type))
    print(f"[INFO] Saved traversability layer '{sf_cfg.map_type}' to: {trav_npy_path}")
    return result


# ----------------------------
# Evaluation stage
# ----------------------------
def run_evaluation(cfg: Dict[str, Any], project_root: Path, grid: GridMap, layer: str) -> Dict[str, Any]:
    evaluator = TraversabilityEvaluator(build_eval_cfg(cfg))
    metrics = evaluator.evaluate(grid, layer)
    evaluator.print_report(metrics)

    out_dir = resolve_under_root(project_root, cfg.get("evaluation", {}).get("out_dir", "data/evaluation"))
    out_dir.mkdir(parents=True, exist_ok=True)

    metrics_path = out_dir / "evaluation_metrics.json"
    evaluator.save_json(metrics, metrics_path)
    print(f"[INFO] Saved evaluation metrics to: {metrics_path}")
    return metrics


# ----------------------------
# Plotting stage
# ----------------------------
def plot_results(cfg: Dict[str, Any], project_root: Path, grid: GridMap, layer: str) -> None:
    vis_cfg = cfg.get("visualization", {})
    show = bool(vis_cfg.get("show", False))
    ox, oy = grid.origin
    lx, ly = grid.length
    extent = (ox, ox + lx, oy, oy + ly)

    viz = TraversabilityVisualizer()
    viz.plot_elevation_map(
        elevation=grid.get(ELEVATION_LAYER),
        title="Elevation Map",
        save_path=resolve_under_root(project_root, vis_cfg.get("elevation_output_path", "data/elevation_map.png")),
        show=show,
        extent=extent,
    )
    viz.plot_traversability_map(
        traversability=grid.get(layer),
        title=f"Traversability ({layer})",
        save_path=resolve_under_root(project_root, vis_cfg.get("traversability_output_path", "data/traversability_step.png")),
        show=show,
        extent=extent,
    )
    viz.plot_layers(
        grid,
        [ELEVATION_LAYER, layer],
        title="Step filter",
        save_path=resolve_under_root(project_root, vis_cfg.get("layers_output_path", "data/step_filter_layers.png")),
        show=show,
    )


# ----------------------------
# Pipeline main
# ----------------------------
def main(argv: Optional[Sequence[str]] = None):
    ap = argparse.ArgumentParser(description="Step-hazard traversability estimation on an elevation map.")
    ap.add_argument("--config", type=str, default="config/config.json", help="Path to config JSON")
    ap.add_argument("--verbose", action="store_true", help="Print step filter diagnostics")
    args = ap.parse_args(argv)

    config_path = Path(args.config).resolve()
    project_root = infer_project_root(config_path)
    cfg = load_config(config_path)

    pipe = cfg.get("pipeline", {})
    run_eval = bool(pipe.get("run_evaluation", True))
    run_plots = bool(pipe.get("run_plots", True))

    # --- Environment ---
    grid = run_environment(cfg, project_root)

    # --- Step filter ---
    result = run_step_filter(cfg, project_root, grid, verbose=args.verbose)
    layer = build_step_filter_cfg(cfg).map_type

    # --- Evaluation ---
    if run_eval:
        run_evaluation(cfg, project_root, result, layer)
    else:
        print("[INFO] pipeline.run_evaluation=false -> skipping evaluation.")

    # --- Plots ---
    if run_plots:
        plot_results(cfg, project_root, result, layer)

    print("[INFO] Pipeline completed successfully.")
    return result


if __name__ == "__main__":
    main()
