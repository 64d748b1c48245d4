#!/usr/bin/env python
# coding: utf-8

# # Relevance Maps for a Precipitation Downscaling Network
#
# This script walks through a prediction-difference analysis of a
# Bernoulli-Gamma downscaling CNN on synthetic predictors. Replace the
# synthetic arrays and the untrained network with your own data and
# checkpoint (e.g. `torch.jit.load("model.pt")`).

import logging
import pathlib

import numpy as np
import torch
from torch import nn

from downscaling_relevance.grid import InputGrid, OutputTemplate
from downscaling_relevance.saliency import (
    RelevanceConfig,
    compute_relevance_maps,
    visualize_relevance,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

OUTPUT_DIR = pathlib.Path("./relevance_example")

# ---
# ### 1. Predictors
#
# Predictors are stacked as (time, lat, lon, variable), e.g. ERA-Interim
# fields at several pressure levels, standardized with training statistics.

rng = np.random.default_rng(42)
grid = InputGrid(
    lats=np.arange(36.0, 44.0, 2.0),
    lons=np.arange(-10.0, 4.0, 2.0),
    channels=["z500", "ta850", "hus850", "ua850"],
)
rows, cols, n_channels = grid.shape
train_inputs = rng.normal(size=(365, rows, cols, n_channels))
test_inputs = rng.normal(size=(30, rows, cols, n_channels))

# Predictand grid: every point the network predicts.
template = OutputTemplate.from_grid(
    lats=np.arange(36.5, 43.5, 1.0), lons=np.arange(-9.5, 3.5, 1.0)
)

# ---
# ### 2. Model
#
# The network emits [p | log shape | log scale] for every predictand point.


class DownscalingCNN(nn.Module):
    def __init__(self, n_channels, n_points):
        super().__init__()
        self.features = nn.Sequential(
            nn.Conv2d(n_channels, 16, kernel_size=3, padding=1),
            nn.ReLU(),
            nn.Conv2d(16, 8, kernel_size=3, padding=1),
            nn.ReLU(),
            nn.Flatten(),
        )
        self.p = nn.LazyLinear(n_points)
        self.log_shape = nn.LazyLinear(n_points)
        self.log_scale = nn.LazyLinear(n_points)

    def forward(self, x):
        h = self.features(x)
        return torch.cat(
            [torch.sigmoid(self.p(h)), self.log_shape(h), self.log_scale(h)], dim=-1
        )


model = DownscalingCNN(n_channels, template.n_points)
model(torch.zeros(1, n_channels, rows, cols))  # materialize lazy layers

# ---
# ### 3. Relevance maps
#
# "channel" mode replaces one predictor variable at a time over the whole
# domain; "window" mode slides a k x k window over each variable.

config = RelevanceConfig(mode="channel", num_samples=20, absolute=True, seed=0)
relevance_map = compute_relevance_maps(
    test_inputs,
    model,
    "bernoulli_gamma",
    output_locations=[(-3.7, 40.4), (2.2, 41.4)],
    template=template,
    baseline=train_inputs,
    config=config,
    grid=grid,
    channels_first=True,
)

# ---
# ### 4. Save and plot

OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
relevance_map.to_netcdf(OUTPUT_DIR / "relevance.nc")
for idx in range(len(relevance_map.locations)):
    visualize_relevance(relevance_map, OUTPUT_DIR / f"relevance_loc{idx}.png", location=idx)
