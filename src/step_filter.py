"""
step_filter.py

Step-hazard traversability estimation on a GridMap.

Two full passes over the map:

1) For every cell with a valid elevation, the largest absolute height
   difference to any valid cell inside the first circular window is stored in
   a transient "step_height" layer (only when it is > 0).
2) For every cell, the "step_height" values inside the second circular window
   are scanned. The running maximum is tracked, and each time it is raised
   above critical_value a counter is bumped. The step used for scoring is

       step = min(step_max, (n_cells / critical_cell_number) * step_max)

   and the traversability is 1 - step / critical_value below the critical
   value, 0.0 otherwise. Cells without any valid neighbor stay NaN.

Note on the counter: n_cells counts how often the running maximum was raised
to a value above critical_value during the scan, not how many neighbors exceed
it. This is inherited behavior and is kept as-is; it usually under-counts
compared to a plain threshold count.

The input map is never modified; update() works on a copy and removes the
transient layer before returning it.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

import numpy as np
from scipy.ndimage import maximum_filter, minimum_filter

from errors import InvalidConfig, MissingConfig, MissingLayer
from grid_map import GridMap


ELEVATION_LAYER = "elevation"
STEP_HEIGHT_LAYER = "step_height"
DEFAULT_MAP_TYPE = "traversability_step"

REQUIRED_KEYS = (
    "critical_value",
    "first_window_radius",
    "second_window_radius",
    "critical_cell_number",
    "map_type",
)


# ---------------------------------------------------------------------- #
# Configuration
# ---------------------------------------------------------------------- #
def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidConfig(name, value, "expected a number, got a boolean")
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise InvalidConfig(name, value, "expected a number") from None
    if not math.isfinite(out):
        raise InvalidConfig(name, value, "must be finite")
    return out


def _as_int(name: str, value: Any) -> int:
    out = _as_float(name, value)
    if not out.is_integer():
        raise InvalidConfig(name, value, "must be an integer")
    return int(out)


@dataclass(frozen=True)
class StepFilterConfig:
    critical_value: float
    first_window_radius: float
    second_window_radius: float
    critical_cell_number: int
    map_type: str = DEFAULT_MAP_TYPE

    # False: n_cells / critical_cell_number is a real division.
    # True: C-style integer division (truncates before scaling step_max).
    truncate_cell_ratio: bool = False

    def __post_init__(self):
        critical_value = _as_float("critical_value", self.critical_value)
        if critical_value <= 0.0:
            raise InvalidConfig("critical_value", self.critical_value, "must be greater than zero")

        first = _as_float("first_window_radius", self.first_window_radius)
        if first < 0.0:
            raise InvalidConfig("first_window_radius", self.first_window_radius, "must not be negative")

        second = _as_float("second_window_radius", self.second_window_radius)
        if second < 0.0:
            raise InvalidConfig("second_window_radius", self.second_window_radius, "must not be negative")

        n_crit = _as_int("critical_cell_number", self.critical_cell_number)
        if n_crit <= 0:
            raise InvalidConfig("critical_cell_number", self.critical_cell_number, "must be greater than zero")

        if self.map_type is None or (isinstance(self.map_type, str) and not self.map_type.strip()):
            raise MissingConfig("map_type")
        if not isinstance(self.map_type, str):
            raise InvalidConfig("map_type", self.map_type, "expected a layer name")
        if self.map_type in (ELEVATION_LAYER, STEP_HEIGHT_LAYER):
            raise InvalidConfig("map_type", self.map_type, "name is reserved for an input or transient layer")

        if not isinstance(self.truncate_cell_ratio, bool):
            raise InvalidConfig("truncate_cell_ratio", self.truncate_cell_ratio, "expected true or false")

        object.__setattr__(self, "critical_value", critical_value)
        object.__setattr__(self, "first_window_radius", first)
        object.__setattr__(self, "second_window_radius", second)
        object.__setattr__(self, "critical_cell_number", n_crit)

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "StepFilterConfig":
        """Build a config from a parameter mapping; every key in REQUIRED_KEYS must be present."""
        for key in REQUIRED_KEYS:
            if key not in params or params[key] is None:
                raise MissingConfig(key)
        return cls(
            critical_value=params["critical_value"],
            first_window_radius=params["first_window_radius"],
            second_window_radius=params["second_window_radius"],
            critical_cell_number=params["critical_cell_number"],
            map_type=params["map_type"],
            truncate_cell_ratio=params.get("truncate_cell_ratio", False),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def load_step_filter_config(config_path: Union[str, Path]) -> StepFilterConfig:
    """
    Load the step filter parameters from a JSON file.

    Parameters may sit at the top level or be nested under "step_filter".
    """
    with open(config_path, "r") as f:
        data = json.load(f)
    block = data.get("step_filter", data)
    if not isinstance(block, dict):
        raise InvalidConfig("step_filter", block, "expected a JSON object")
    return StepFilterConfig.from_dict(block)


# ---------------------------------------------------------------------- #
# Observers
# ---------------------------------------------------------------------- #
class StepFilterObserver:
    """
    Diagnostic hooks called by StepFilter. All hooks are no-ops here;
    subclass and override what you need. Observers never change results.
    """

    def configured(self, config: StepFilterConfig) -> None:
        pass

    def step_computed(self, step_height: np.ndarray) -> None:
        """After pass 1, with the transient step layer (NaN where unset)."""

    def score_computed(self, step_max: np.ndarray, n_cells: np.ndarray, step: np.ndarray) -> None:
        """After pass 2, with per-cell running max, counter and scored step (NaN where invalid)."""

    def finished(self, grid: GridMap) -> None:
        pass


class PrintObserver(StepFilterObserver):
    def __init__(self, max_cells: int = 5):
        self.max_cells = max_cells

    def configured(self, config: StepFilterConfig) -> None:
        print(f"[INFO] Critical step height = {config.critical_value:f}.")
        print(f"[INFO] First window radius of step filter = {config.first_window_radius:f}.")
        print(f"[INFO] Second window radius of step filter = {config.second_window_radius:f}.")
        print(f"[INFO] Number of critical cells of step filter = {config.critical_cell_number:d}.")
        print(f"[INFO] Step map type = {config.map_type}.")

    def step_computed(self, step_height: np.ndarray) -> None:
        valid = np.isfinite(step_height)
        if not np.any(valid):
            print("[INFO] Pass 1: no cell with a non-zero step.")
            return
        print(
            f"[INFO] Pass 1: {int(valid.sum())} cells with a step, "
            f"max step = {float(np.max(step_height[valid])):.4f}"
        )

    def score_computed(self, step_max: np.ndarray, n_cells: np.ndarray, step: np.ndarray) -> None:
        critical = np.argwhere(n_cells > 0)
        print(f"[INFO] Pass 2: {len(critical)} cells saw a step above the critical value.")
        for r, c in critical[: self.max_cells]:
            print(
                f"[INFO]   cell ({r}, {c}): step max = {step_max[r, c]:.4f}, "
                f"n_cells = {int(n_cells[r, c])}, step = {step[r, c]:.4f}"
            )

    def finished(self, grid: GridMap) -> None:
        print(f"[INFO] Step filter done: {grid}")


# ---------------------------------------------------------------------- #
# Filter
# ---------------------------------------------------------------------- #
def _shifted(a: np.ndarray, dr: int, dc: int) -> np.ndarray:
    """out[r, c] = a[r + dr, c + dc], NaN where that falls outside the array."""
    rows, cols = a.shape
    out = np.full_like(a, np.nan)
    r0, r1 = max(0, -dr), min(rows, rows - dr)
    c0, c1 = max(0, -dc), min(cols, cols - dc)
    if r0 < r1 and c0 < c1:
        out[r0:r1, c0:c1] = a[r0 + dr:r1 + dr, c0 + dc:c1 + dc]
    return out


class StepFilter:
    def __init__(
        self,
        config: Union[StepFilterConfig, Mapping[str, Any]],
        observer: Optional[StepFilterObserver] = None,
    ):
        """
        :param config: validated StepFilterConfig or a raw parameter mapping
        :param observer: optional diagnostic hooks
        """
        if not isinstance(config, StepFilterConfig):
            config = StepFilterConfig.from_dict(config)
        self.config = config
        self.observer = observer or StepFilterObserver()
        self.observer.configured(config)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def update(self, grid: GridMap) -> GridMap:
        """
        Return a copy of grid with the traversability layer (config.map_type) added.

        Raises MissingLayer if grid has no "elevation" layer.
        """
        if not grid.exists(ELEVATION_LAYER):
            raise MissingLayer(ELEVATION_LAYER)

        out = grid.copy()
        out.add(self.config.map_type)
        out.add(STEP_HEIGHT_LAYER)

        self._first_pass(out)
        self.observer.step_computed(out.get(STEP_HEIGHT_LAYER))

        self._second_pass(out)

        out.erase(STEP_HEIGHT_LAYER)

        self.observer.finished(out)
        return out

    estimate = update

    def step_height(self, grid: GridMap) -> np.ndarray:
        """Pass-1 step layer for grid (NaN where unset), without scoring."""
        if not grid.exists(ELEVATION_LAYER):
            raise MissingLayer(ELEVATION_LAYER)
        work = GridMap(grid.shape, grid.resolution, grid.origin,
                       layers={ELEVATION_LAYER: grid.get(ELEVATION_LAYER)})
        work.add(STEP_HEIGHT_LAYER)
        self._first_pass(work)
        return work.get(STEP_HEIGHT_LAYER)

    # ------------------------------------------------------------------ #
    # Passes
    # ------------------------------------------------------------------ #
    def _first_pass(self, grid: GridMap) -> None:
        height = grid.get(ELEVATION_LAYER)
        valid = np.isfinite(height)
        footprint = grid.circle_footprint(self.config.first_window_radius)

        # Largest |h(C) - h(N)| over the window is max(max(N) - h(C), h(C) - min(N)).
        # Invalid cells and cells outside the map never win the max / min.
        local_max = maximum_filter(
            np.where(valid, height, -np.inf), footprint=footprint, mode="constant", cval=-np.inf
        )
        local_min = minimum_filter(
            np.where(valid, height, np.inf), footprint=footprint, mode="constant", cval=np.inf
        )

        step_max = np.zeros(grid.shape, dtype=float)
        step_max[valid] = np.maximum(local_max[valid] - height[valid], height[valid] - local_min[valid])

        step_layer = grid.get(STEP_HEIGHT_LAYER)
        step_layer[:] = np.where(valid & (step_max > 0.0), step_max, np.nan)

    def _second_pass(self, grid: GridMap) -> None:
        cfg = self.config
        step_height = grid.get(STEP_HEIGHT_LAYER)

        step_max = np.zeros(grid.shape, dtype=float)
        n_cells = np.zeros(grid.shape, dtype=np.int64)
        is_valid = np.zeros(grid.shape, dtype=bool)

        # Same scan order as GridMap.iter_circle; the counter depends on it.
        for dr, dc in grid.circle_offsets(cfg.second_window_radius):
            neighbor = _shifted(step_height, dr, dc)
            seen = np.isfinite(neighbor)
            is_valid |= seen

            raised = seen & (neighbor > step_max)
            step_max = np.where(raised, neighbor, step_max)
            n_cells += raised & (step_max > cfg.critical_value)

        if cfg.truncate_cell_ratio:
            ratio = (n_cells // cfg.critical_cell_number).astype(float)
        else:
            ratio = n_cells / cfg.critical_cell_number

        step = np.minimum(step_max, ratio * step_max)
        score = np.where(step < cfg.critical_value, 1.0 - step / cfg.critical_value, 0.0)

        grid.get(cfg.map_type)[:] = np.where(is_valid, score, np.nan)
        self.observer.score_computed(step_max, n_cells, np.where(is_valid, step, np.nan))

    def __repr__(self) -> str:
        return f"StepFilter({self.config})"
