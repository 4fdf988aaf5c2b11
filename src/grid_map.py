"""
grid_map.py

Minimal 2D grid map with named float layers, used as input and output of the
step filter.

Conventions:
- cell index is (row, col); row grows with y, col grows with x
- origin is the world position (x, y) of the lower-left map corner
- cell centers sit at origin + (col + 0.5, row + 0.5) * resolution
- NaN (any non-finite value) marks an invalid / unknown cell
"""

from __future__ import annotations

import math
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from errors import InvalidGrid, MissingLayer


Index = Tuple[int, int]
Position = Tuple[float, float]


class GridMap:
    def __init__(
        self,
        shape: Tuple[int, int],
        resolution: float,
        origin: Sequence[float] = (0.0, 0.0),
        layers: Optional[Dict[str, np.ndarray]] = None,
    ):
        """
        :param shape: (rows, cols) number of cells
        :param resolution: cell edge length in meters
        :param origin: world position (x, y) of the lower-left corner
        :param layers: optional initial layers, each of shape (rows, cols)
        """
        if len(shape) != 2:
            raise InvalidGrid(f"shape must have two entries, got {shape!r}")
        rows, cols = int(shape[0]), int(shape[1])
        if rows <= 0 or cols <= 0:
            raise InvalidGrid(f"shape must be positive, got {(rows, cols)}")

        resolution = float(resolution)
        if not math.isfinite(resolution) or resolution <= 0.0:
            raise InvalidGrid(f"resolution must be finite and > 0, got {resolution}")

        if len(origin) != 2:
            raise InvalidGrid(f"origin must be (x, y), got {origin!r}")
        ox, oy = float(origin[0]), float(origin[1])
        if not (math.isfinite(ox) and math.isfinite(oy)):
            raise InvalidGrid(f"origin must be finite, got {(ox, oy)}")

        self.rows = rows
        self.cols = cols
        self.resolution = resolution
        self.origin = (ox, oy)

        self._layers: Dict[str, np.ndarray] = {}
        for name, data in (layers or {}).items():
            self.add(name, data)

    @classmethod
    def from_elevation(
        cls,
        elevation: np.ndarray,
        resolution: float,
        origin: Sequence[float] = (0.0, 0.0),
        layer: str = "elevation",
    ) -> "GridMap":
        elevation = np.asarray(elevation, dtype=float)
        if elevation.ndim != 2:
            raise InvalidGrid("elevation must be a 2D array")
        return cls(elevation.shape, resolution, origin, layers={layer: elevation})

    # ------------------------------------------------------------------ #
    # Geometry
    # ------------------------------------------------------------------ #
    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def length(self) -> Tuple[float, float]:
        """Map extent in meters along (x, y)."""
        return (self.cols * self.resolution, self.rows * self.resolution)

    def index_to_position(self, index: Index) -> Position:
        r, c = index
        if not (0 <= r < self.rows and 0 <= c < self.cols):
            raise IndexError(f"index {index} outside map of shape {self.shape}")
        x = self.origin[0] + (c + 0.5) * self.resolution
        y = self.origin[1] + (r + 0.5) * self.resolution
        return (x, y)

    def position_to_index(self, position: Sequence[float]) -> Optional[Index]:
        """Index of the cell containing position, or None outside the map."""
        x, y = self._checked_position(position)
        c = int(math.floor((x - self.origin[0]) / self.resolution))
        r = int(math.floor((y - self.origin[1]) / self.resolution))
        if 0 <= r < self.rows and 0 <= c < self.cols:
            return (r, c)
        return None

    def is_inside(self, position: Sequence[float]) -> bool:
        return self.position_to_index(position) is not None

    def iter_indices(self) -> Iterator[Index]:
        for r in range(self.rows):
            for c in range(self.cols):
                yield (r, c)

    def iter_circle(self, center: Sequence[float], radius: float) -> Iterator[Index]:
        """
        Yield indices whose cell center lies within radius of center.

        The clamped bounding box of the circle is scanned in row-major order
        (rows ascending, then cols ascending). Membership is inclusive, with
        the same tolerance as circle_offsets.
        """
        cx, cy = self._checked_position(center)
        radius = self._checked_radius(radius)
        res = self.resolution
        ox, oy = self.origin

        c0 = max(0, int(math.floor((cx - radius - ox) / res - 0.5)))
        c1 = min(self.cols - 1, int(math.ceil((cx + radius - ox) / res - 0.5)))
        r0 = max(0, int(math.floor((cy - radius - oy) / res - 0.5)))
        r1 = min(self.rows - 1, int(math.ceil((cy + radius - oy) / res - 0.5)))

        r2 = self._radius_sq(radius)
        for r in range(r0, r1 + 1):
            dy = oy + (r + 0.5) * res - cy
            for c in range(c0, c1 + 1):
                dx = ox + (c + 0.5) * res - cx
                if dx * dx + dy * dy <= r2:
                    yield (r, c)

    def circle_offsets(self, radius: float) -> List[Index]:
        """
        Ordered (drow, dcol) offsets visited by iter_circle around a cell center.

        Offsets reaching further than the map itself are dropped since they
        can never land on a cell.
        """
        radius = self._checked_radius(radius)
        res = self.resolution
        k = min(int(math.floor(radius / res)) + 1, max(self.rows, self.cols))
        r2 = self._radius_sq(radius)

        offsets: List[Index] = []
        for dr in range(-k, k + 1):
            for dc in range(-k, k + 1):
                if (dc * res) ** 2 + (dr * res) ** 2 <= r2:
                    offsets.append((dr, dc))
        return offsets

    def circle_footprint(self, radius: float) -> np.ndarray:
        """Boolean (2k+1, 2k+1) kernel of circle_offsets, centered."""
        offsets = self.circle_offsets(radius)
        k = max(max(abs(dr), abs(dc)) for dr, dc in offsets)
        footprint = np.zeros((2 * k + 1, 2 * k + 1), dtype=bool)
        for dr, dc in offsets:
            footprint[dr + k, dc + k] = True
        return footprint

    # ------------------------------------------------------------------ #
    # Layers
    # ------------------------------------------------------------------ #
    @property
    def layers(self) -> List[str]:
        return list(self._layers.keys())

    def exists(self, layer: str) -> bool:
        return layer in self._layers

    def add(self, layer: str, value: Union[float, np.ndarray] = np.nan) -> None:
        """Create layer (or reset it if it exists) from a scalar or an array."""
        if np.isscalar(value):
            data = np.full(self.shape, float(value), dtype=float)
        else:
            data = np.array(value, dtype=float)
            if data.shape != self.shape:
                raise InvalidGrid(
                    f"layer '{layer}' has shape {data.shape}, map shape is {self.shape}"
                )
        self._layers[layer] = data

    def erase(self, layer: str) -> None:
        if layer not in self._layers:
            raise MissingLayer(layer)
        del self._layers[layer]

    def get(self, layer: str) -> np.ndarray:
        """Direct (mutable) access to a layer array."""
        try:
            return self._layers[layer]
        except KeyError:
            raise MissingLayer(layer) from None

    def at(self, layer: str, index: Index) -> float:
        return float(self.get(layer)[index])

    def set(self, layer: str, index: Index, value: float) -> None:
        self.get(layer)[index] = value

    def is_valid(self, index: Index, layer: str) -> bool:
        return bool(np.isfinite(self.get(layer)[index]))

    def copy(self) -> "GridMap":
        return GridMap(
            self.shape,
            self.resolution,
            self.origin,
            layers={name: data.copy() for name, data in self._layers.items()},
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _checked_position(position: Sequence[float]) -> Position:
        x, y = float(position[0]), float(position[1])
        if not (math.isfinite(x) and math.isfinite(y)):
            raise InvalidGrid(f"position must be finite, got {(x, y)}")
        return (x, y)

    @staticmethod
    def _checked_radius(radius: float) -> float:
        radius = float(radius)
        if not math.isfinite(radius) or radius < 0.0:
            raise InvalidGrid(f"radius must be finite and >= 0, got {radius}")
        return radius

    def _radius_sq(self, radius: float) -> float:
        """
        Squared radius used as the inclusive membership bound.

        Cells lying exactly on the circle must be kept on every side, but
        world-position arithmetic at resolutions like 0.04 lands a few ulps
        off. The slack is far below any real distance between cell centers.
        """
        return radius * radius + 1e-9 * self.resolution * self.resolution

    def __repr__(self) -> str:
        return (
            f"GridMap(shape={self.shape}, resolution={self.resolution}, "
            f"origin={self.origin}, layers={self.layers})"
        )
