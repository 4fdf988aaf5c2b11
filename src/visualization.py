"""
visualization.py

Centralized visualization utilities for:
- Elevation maps (2D grid in meters, NaN = unknown)
- Traversability maps (2D grid in [0,1], NaN = unknown)
- Side-by-side view of any layers of a GridMap

This file should contain ALL plotting logic, so environment.py and
step_filter.py remain "pure" generation/estimation modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import numpy as np
import matplotlib

# Headless-friendly backend (Docker / CI / no X server)
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from grid_map import GridMap


class TraversabilityVisualizer:
    def __init__(
        self,
        map_cmap: str = "viridis",
        elevation_cmap: str = "terrain",
        unknown_color: str = "lightgray",
        map_vmin: float = 0.0,
        map_vmax: float = 1.0,
    ):
        self.map_cmap = map_cmap
        self.elevation_cmap = elevation_cmap
        self.unknown_color = unknown_color
        self.map_vmin = map_vmin
        self.map_vmax = map_vmax

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _finalize_figure(
        fig: Any,
        save_path: Optional[Path],
        show: bool,
        dpi: int = 200,
    ) -> None:
        plt.tight_layout()
        if save_path is not None:
            save_path = Path(save_path)
            save_path.parent.mkdir(parents=True, exist_ok=True)
            plt.savefig(save_path, dpi=dpi)
            print(f"[INFO] Saved figure to: {save_path}")

        if show:
            plt.show()
        else:
            plt.close(fig)

    def _cmap(self, name: str):
        cmap = matplotlib.colormaps[name].copy()
        cmap.set_bad(self.unknown_color)
        return cmap

    @staticmethod
    def _check_2d(arr: Optional[np.ndarray], name: str) -> np.ndarray:
        if arr is None:
            raise ValueError(f"{name} is None")
        arr = np.asarray(arr, dtype=float)
        if arr.ndim != 2:
            raise ValueError(f"{name} must be a 2D array")
        return arr

    # ------------------------------------------------------------------ #
    # 1) Elevation map
    # ------------------------------------------------------------------ #
    def plot_elevation_map(
        self,
        elevation: np.ndarray,
        title: str = "Elevation Map",
        save_path: Optional[Path] = None,
        show: bool = False,
        figsize: Tuple[float, float] = (6, 6),
        extent: Optional[Sequence[float]] = None,
    ) -> None:
        elevation = self._check_2d(elevation, "elevation")
        fig, ax = plt.subplots(figsize=figsize)

        im = ax.imshow(
            np.ma.masked_invalid(elevation),
            origin="lower",
            cmap=self._cmap(self.elevation_cmap),
            interpolation="nearest",
            extent=extent,
        )
        cbar = fig.colorbar(im, ax=ax)
        cbar.set_label("Elevation (m)")

        ax.set_title(title)
        self._label_axes(ax, extent)
        self._finalize_figure(fig, save_path, show)

    # ------------------------------------------------------------------ #
    # 2) Traversability map
    # ------------------------------------------------------------------ #
    def plot_traversability_map(
        self,
        traversability: np.ndarray,
        title: str = "Traversability Map",
        save_path: Optional[Path] = None,
        show: bool = False,
        figsize: Tuple[float, float] = (6, 6),
        interpolation: str = "nearest",
        extent: Optional[Sequence[float]] = None,
    ) -> None:
        traversability = self._check_2d(traversability, "traversability")
        fig, ax = plt.subplots(figsize=figsize)

        im = ax.imshow(
            np.ma.masked_invalid(traversability),
            origin="lower",
            cmap=self._cmap(self.map_cmap),
            interpolation=interpolation,
            vmin=self.map_vmin,
            vmax=self.map_vmax,
            extent=extent,
        )
        cbar = fig.colorbar(im, ax=ax)
        cbar.set_label("Traversability (0 = step, 1 = flat, gray = unknown)")

        ax.set_title(title)
        self._label_axes(ax, extent)
        self._finalize_figure(fig, save_path, show)

    # ------------------------------------------------------------------ #
    # 3) Grid map layers side by side
    # ------------------------------------------------------------------ #
    def plot_layers(
        self,
        grid: GridMap,
        layers: Sequence[str],
        title: str = "Grid Map Layers",
        save_path: Optional[Path] = None,
        show: bool = False,
        panel_size: float = 5.0,
    ) -> None:
        """
        One panel per layer, in world coordinates. Layers named "elevation"
        use the elevation colormap, everything else the [0, 1] map colormap.
        """
        if not layers:
            raise ValueError("layers is empty")

        ox, oy = grid.origin
        lx, ly = grid.length
        extent = (ox, ox + lx, oy, oy + ly)

        fig, axes = plt.subplots(1, len(layers), figsize=(panel_size * len(layers), panel_size), squeeze=False)
        for ax, name in zip(axes[0], layers):
            data = np.ma.masked_invalid(grid.get(name))
            if name == "elevation":
                im = ax.imshow(data, origin="lower", cmap=self._cmap(self.elevation_cmap),
                               interpolation="nearest", extent=extent)
            else:
                im = ax.imshow(data, origin="lower", cmap=self._cmap(self.map_cmap),
                               interpolation="nearest", extent=extent,
                               vmin=self.map_vmin, vmax=self.map_vmax)
            fig.colorbar(im, ax=ax)
            ax.set_title(name)
            self._label_axes(ax, extent)

        fig.suptitle(title)
        self._finalize_figure(fig, save_path, show)

    @staticmethod
    def _label_axes(ax: Any, extent: Optional[Sequence[float]]) -> None:
        if extent is None:
            ax.set_xlabel("x (cell)")
            ax.set_ylabel("y (cell)")
        else:
            ax.set_xlabel("x (m)")
            ax.set_ylabel("y (m)")
