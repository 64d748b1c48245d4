# Copyright 2025 Poke & Wiggle GmbH. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Predictor grids, predictand templates and output locations."""

from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Sequence

import numpy as np

from downscaling_relevance.errors import ConfigurationError, DomainError


class OutputLocation(NamedTuple):
    lon: float
    lat: float


@dataclass
class InputGrid:
    """Coordinates of the predictor grid (rows are latitudes, columns longitudes).

    Args:
        lats: 1-D latitudes, one per row.
        lons: 1-D longitudes, one per column.
        channels: Names of the predictor variables, one per channel.
    """

    lats: np.ndarray
    lons: np.ndarray
    channels: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.lats = np.asarray(self.lats, dtype=float)
        self.lons = np.asarray(self.lons, dtype=float)
        self.channels = [str(c) for c in self.channels]

    @classmethod
    def from_shape(cls, rows: int, cols: int, n_channels: int) -> "InputGrid":
        """Index-based grid used when no coordinates are supplied."""
        return cls(
            lats=np.arange(rows, dtype=float),
            lons=np.arange(cols, dtype=float),
            channels=[f"var{i}" for i in range(n_channels)],
        )

    @property
    def shape(self) -> tuple[int, int, int]:
        return len(self.lats), len(self.lons), len(self.channels)

    def check_matches(self, inputs: np.ndarray):
        rows, cols, n_channels = inputs.shape[1:]
        if self.shape != (rows, cols, n_channels):
            raise ConfigurationError(
                f"Grid of shape {self.shape} (lat, lon, channel) does not match "
                f"input tensor with spatial-channel shape {(rows, cols, n_channels)}"
            )


class OutputTemplate:
    """Coordinates of every point the trained model predicts.

    The order of ``points`` is the order of each parameter block in the
    model output vector.
    """

    def __init__(self, points, tolerance: Optional[float] = None):
        points = np.asarray(points, dtype=float)
        if points.ndim != 2 or points.shape[1] != 2 or len(points) == 0:
            raise ConfigurationError(
                f"Template points must have shape (n_points, 2), got {points.shape}"
            )
        self.points = points
        self.tolerance = tolerance

    @classmethod
    def from_grid(cls, lats: Sequence[float], lons: Sequence[float], mask=None):
        """Build a template from a regular predictand grid.

        Points are ordered row-major (latitude first), skipping cells where
        ``mask`` is False (e.g. sea points of a land-only predictand).
        """
        lon2d, lat2d = np.meshgrid(np.asarray(lons), np.asarray(lats))
        points = np.stack([lon2d.ravel(), lat2d.ravel()], axis=-1)
        if mask is not None:
            points = points[np.asarray(mask, dtype=bool).ravel()]
        return cls(points)

    def __len__(self):
        return len(self.points)

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """(lon_min, lon_max, lat_min, lat_max)."""
        lon_min, lat_min = self.points.min(axis=0)
        lon_max, lat_max = self.points.max(axis=0)
        return float(lon_min), float(lon_max), float(lat_min), float(lat_max)

    def contains(self, location: OutputLocation) -> bool:
        lon_min, lon_max, lat_min, lat_max = self.extent
        return lon_min <= location.lon <= lon_max and lat_min <= location.lat <= lat_max

    def resolve(self, locations) -> list[int]:
        """Map (lon, lat) pairs to indices of the nearest template points.

        Raises:
            DomainError: If the list is empty or a location falls outside the
                template extent (or farther than ``tolerance`` from any point).
        """
        locations = [OutputLocation(*map(float, loc)) for loc in locations]
        if not locations:
            raise DomainError("At least one output location is required")

        indices = []
        for loc in locations:
            if not self.contains(loc):
                raise DomainError(
                    f"Output location (lon={loc.lon}, lat={loc.lat}) lies outside "
                    f"the template extent {self.extent}"
                )
            dist = np.hypot(self.points[:, 0] - loc.lon, self.points[:, 1] - loc.lat)
            idx = int(np.argmin(dist))
            if self.tolerance is not None and dist[idx] > self.tolerance:
                raise DomainError(
                    f"No template point within {self.tolerance} of "
                    f"(lon={loc.lon}, lat={loc.lat})"
                )
            indices.append(idx)
        return indices
