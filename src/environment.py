"""
environment.py

Synthetic elevation maps for the step filter, configured via
config/config.json ("map" and "elevation" blocks).

Supports:
- Perlin-based rolling terrain ("perlin")
- Perlin terrain with raised rectangular blocks, i.e. curbs / boxes ("steps")
- Constant terrain ("flat")

Optionally punches random holes (NaN cells) into the map to mimic missing
sensor returns. No traversability logic here - just elevation generation.
"""

import json
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
from perlin_noise import PerlinNoise

from grid_map import GridMap
from step_filter import ELEVATION_LAYER
from visualization import TraversabilityVisualizer


class ElevationGenerator:
    def __init__(
        self,
        width: int,
        height: int,
        resolution: float,
        generator: str,
        perlin_scale: float,
        perlin_octaves: int,
        perlin_amplitude: float,
        seed: int,
        num_steps: int = 0,
        step_max_height: float = 0.0,
        step_max_size: int = 1,
        invalid_fraction: float = 0.0,
        origin: Sequence[float] = (0.0, 0.0),
    ):
        """
        :param width:  number of cells in X
        :param height: number of cells in Y
        :param resolution: cell size in meters
        :param generator: "perlin", "steps" or "flat"
        :param perlin_scale: scale factor for Perlin coordinates (cells)
        :param perlin_octaves: number of octaves for Perlin noise
        :param perlin_amplitude: peak-to-peak terrain height in meters
        :param seed: random seed for noise, block placement and holes
        :param num_steps: number of raised blocks ("steps" generator)
        :param step_max_height: maximum block height in meters
        :param step_max_size: maximum block edge length in cells
        :param invalid_fraction: fraction of cells set to NaN (0-1)
        :param origin: world position of the lower-left map corner
        """
        self.width = width
        self.height = height
        self.resolution = resolution
        self.generator = generator.lower()

        self.perlin_scale = perlin_scale
        self.perlin_octaves = perlin_octaves
        self.perlin_amplitude = perlin_amplitude
        self.seed = seed

        self.num_steps = num_steps
        self.step_max_height = step_max_height
        self.step_max_size = step_max_size
        self.invalid_fraction = invalid_fraction
        self.origin = origin

        self.elevation: Optional[np.ndarray] = None

    # ------------------------------------------------------------------ #
    # 1) Public API
    # ------------------------------------------------------------------ #
    def generate_elevation_map(self) -> np.ndarray:
        """
        Generate the elevation map according to the selected generator.

        Returns:
            elevation map as a (height, width) numpy array in meters,
            NaN where a cell is unknown.
        """
        if self.generator == "perlin":
            elev = self._generate_perlin_map()
        elif self.generator == "steps":
            elev = self._generate_perlin_map()
            elev = self._add_steps(elev)
        elif self.generator == "flat":
            elev = np.zeros((self.height, self.width), dtype=float)
        else:
            raise ValueError("generator must be 'perlin', 'steps' or 'flat'")

        if self.invalid_fraction > 0.0:
            elev = self._punch_holes(elev)

        self.elevation = elev
        return elev

    def generate_grid(self) -> GridMap:
        elev = self.generate_elevation_map()
        return GridMap.from_elevation(elev, self.resolution, self.origin, layer=ELEVATION_LAYER)

    # ------------------------------------------------------------------ #
    # 2) Perlin-based terrain
    # ------------------------------------------------------------------ #
    def _generate_perlin_map(self) -> np.ndarray:
        """Perlin-noise terrain in [0, perlin_amplitude] meters."""
        noise = PerlinNoise(octaves=self.perlin_octaves, seed=self.seed)
        elev = np.zeros((self.height, self.width), dtype=float)

        for y in range(self.height):
            for x in range(self.width):
                n = noise([x / self.perlin_scale, y / self.perlin_scale])  # [-1, 1]
                elev[y, x] = (n + 1.0) / 2.0 * self.perlin_amplitude

        return elev

    # ------------------------------------------------------------------ #
    # 3) Steps (raised blocks)
    # ------------------------------------------------------------------ #
    def _add_steps(self, elev: np.ndarray) -> np.ndarray:
        """
        Raise num_steps axis-aligned blocks on top of the terrain.

        Each block gets a random size in [1, step_max_size] cells per side and a
        random height in [0.5, 1.0] * step_max_height, so block edges are sharp
        discontinuities.
        """
        rng = np.random.default_rng(self.seed)
        elev = elev.copy()
        H, W = elev.shape
        max_size = max(1, int(self.step_max_size))

        for _ in range(int(self.num_steps)):
            bh = int(rng.integers(1, max_size + 1))
            bw = int(rng.integers(1, max_size + 1))
            y0 = int(rng.integers(0, max(1, H - bh + 1)))
            x0 = int(rng.integers(0, max(1, W - bw + 1)))
            dz = self.step_max_height * (0.5 + 0.5 * rng.random())
            elev[y0:y0 + bh, x0:x0 + bw] += dz

        return elev

    def _punch_holes(self, elev: np.ndarray) -> np.ndarray:
        rng = np.random.default_rng(self.seed + 1)
        frac = float(np.clip(self.invalid_fraction, 0.0, 1.0))
        holes = rng.random(elev.shape) < frac
        return np.where(holes, np.nan, elev)


# ---------------------------------------------------------------------- #
# Config handling & main
# ---------------------------------------------------------------------- #
def load_config(config_path: Optional[Path] = None) -> dict:
    """
    Load JSON config. If config_path is None, assume project structure:

        project_root/
          config/config.json
          src/environment.py

    and compute the path relative to this file.
    """
    if config_path is None:
        project_root = Path(__file__).resolve().parents[1]
        config_path = project_root / "config" / "config.json"

    with open(config_path, "r") as f:
        cfg = json.load(f)

    return cfg


def generator_from_config(cfg: dict) -> ElevationGenerator:
    map_cfg = cfg.get("map", {})
    elev_cfg = cfg.get("elevation", {})

    return ElevationGenerator(
        width=int(map_cfg.get("width", 100)),
        height=int(map_cfg.get("height", 100)),
        resolution=float(map_cfg.get("resolution", 0.04)),
        generator=str(map_cfg.get("generator", "steps")),
        perlin_scale=float(elev_cfg.get("perlin_scale", 30.0)),
        perlin_octaves=int(elev_cfg.get("perlin_octaves", 3)),
        perlin_amplitude=float(elev_cfg.get("perlin_amplitude", 0.2)),
        seed=int(elev_cfg.get("seed", 0)),
        num_steps=int(elev_cfg.get("num_steps", 12)),
        step_max_height=float(elev_cfg.get("step_max_height", 0.4)),
        step_max_size=int(elev_cfg.get("step_max_size", 15)),
        invalid_fraction=float(elev_cfg.get("invalid_fraction", 0.0)),
        origin=tuple(map_cfg.get("origin", (0.0, 0.0))),
    )


def main():
    cfg = load_config()
    vis_cfg = cfg.get("visualization", {})

    project_root = Path(__file__).resolve().parents[1]
    elevation_npy_path = project_root / vis_cfg.get("elevation_npy_path", "data/elevation_map.npy")
    elevation_png_path = project_root / vis_cfg.get("elevation_output_path", "data/elevation_map.png")

    env = generator_from_config(cfg)
    elev = env.generate_elevation_map()

    elevation_npy_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(elevation_npy_path, elev)
    print(f"[INFO] Saved elevation map to: {elevation_npy_path}")

    viz = TraversabilityVisualizer()
    viz.plot_elevation_map(
        elevation=elev,
        title=f"Elevation Map ({env.generator})",
        save_path=elevation_png_path,
        show=bool(vis_cfg.get("show", False)),
    )


if __name__ == "__main__":
    main()
