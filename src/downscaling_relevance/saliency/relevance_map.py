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

import json
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import xarray as xr

from downscaling_relevance.grid import InputGrid, OutputLocation

DIMS = ("time", "lat", "lon", "channel", "location")

REDUCTIONS = {
    "abs_mean": lambda values: np.nanmean(np.abs(values), axis=0),
    "mean": lambda values: np.nanmean(values, axis=0),
    "abs_max": lambda values: np.nanmax(np.abs(values), axis=0),
}


@dataclass
class RelevanceMap:
    """Relevance scores of one run plus the metadata needed to plot them.

    ``values`` has shape (sample, row, col, channel, location). Samples that
    failed or were never processed (aborted run) hold NaN.
    """

    values: np.ndarray
    grid: InputGrid
    locations: list[OutputLocation]
    location_indices: list[int]
    config: Dict[str, Any] = field(default_factory=dict)
    failed_samples: Dict[int, str] = field(default_factory=dict)
    aborted: bool = False
    times: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.times is None:
            self.times = np.arange(self.values.shape[0])

    @property
    def n_samples(self) -> int:
        return self.values.shape[0]

    @property
    def completed(self) -> np.ndarray:
        """Boolean mask of samples with a finite relevance map."""
        flat = self.values.reshape(self.n_samples, -1)
        return np.isfinite(flat).all(axis=1)

    def aggregate(self, reduction: str = "abs_mean") -> np.ndarray:
        """Collapse the sample axis, returning (row, col, channel, location)."""
        try:
            reduce = REDUCTIONS[reduction]
        except KeyError:
            raise ValueError(
                f"Unknown reduction: {reduction}. Choose one of {list(REDUCTIONS)}"
            )
        # Cells where every sample failed reduce to NaN without a warning.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            return reduce(self.values)

    def to_dataarray(self) -> xr.DataArray:
        return xr.DataArray(
            self.values,
            dims=DIMS,
            coords={
                "time": self.times,
                "lat": self.grid.lats,
                "lon": self.grid.lons,
                "channel": self.grid.channels,
                "location": np.arange(len(self.locations)),
                "location_lon": ("location", [loc.lon for loc in self.locations]),
                "location_lat": ("location", [loc.lat for loc in self.locations]),
                "template_index": ("location", list(self.location_indices)),
            },
            name="relevance",
            attrs={
                "config": json.dumps(self.config),
                "failed_samples": json.dumps(
                    {str(k): v for k, v in self.failed_samples.items()}
                ),
                "aborted": int(self.aborted),
            },
        )

    def to_netcdf(self, path):
        self.to_dataarray().to_netcdf(path)
        return path

    @classmethod
    def from_dataarray(cls, da: xr.DataArray) -> "RelevanceMap":
        da = da.transpose(*DIMS)
        failed = json.loads(da.attrs.get("failed_samples", "{}"))
        return cls(
            values=np.asarray(da.values, dtype=float),
            grid=InputGrid(
                lats=da["lat"].values,
                lons=da["lon"].values,
                channels=list(da["channel"].values),
            ),
            locations=[
                OutputLocation(float(lon), float(lat))
                for lon, lat in zip(da["location_lon"].values, da["location_lat"].values)
            ],
            location_indices=[int(i) for i in da["template_index"].values],
            config=json.loads(da.attrs.get("config", "{}")),
            failed_samples={int(k): v for k, v in failed.items()},
            aborted=bool(da.attrs.get("aborted", 0)),
            times=da["time"].values,
        )

    @classmethod
    def from_netcdf(cls, path) -> "RelevanceMap":
        with xr.open_dataarray(path) as da:
            return cls.from_dataarray(da.load())
