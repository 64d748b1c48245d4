#!/usr/bin/env python
"""
Command-line interface for relevance analysis.

Usage:
    python -m downscaling_relevance.saliency.cli --model model.pt --data predictors.npz \
        --locations "[-3.7, 40.4]" --loss bernoulli_gamma --relevance.mode channel
"""

import dataclasses
import logging
import pathlib

import draccus
import numpy as np
import torch

from downscaling_relevance.errors import ConfigurationError
from downscaling_relevance.grid import InputGrid, OutputTemplate
from downscaling_relevance.losses import LossFunction
from downscaling_relevance.saliency.config import RelevanceConfig
from downscaling_relevance.saliency.core import compute_relevance_maps
from downscaling_relevance.saliency.visualization import visualize_relevance

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


@dataclasses.dataclass
class RelevanceCliArgs:
    """Relevance map computation for a trained downscaling model.

    Analysis settings are exposed via the --relevance.* namespace, e.g.
        --relevance.mode window
        --relevance.window-size 3
        --relevance.num-samples 100
    """

    # TorchScript file of the trained model.
    model: pathlib.Path
    # .npz archive with arrays "test", "baseline" and "template" (n_points x [lon, lat]).
    # Optional: "lats", "lons", "channels", "targets", "times".
    data: pathlib.Path
    # Output locations as flattened lon/lat pairs: [lon0, lat0, lon1, lat1, ...].
    locations: list[float] = dataclasses.field(default_factory=list)
    # Distribution the model parameterizes.
    loss: LossFunction = LossFunction.GAUSSIAN
    # The model expects (batch, channel, row, col) inputs.
    channels_first: bool = False
    # Directory receiving relevance.nc and one figure per location.
    output_dir: pathlib.Path = pathlib.Path("./relevance")
    # Skip the figures.
    no_plot: bool = False
    relevance: RelevanceConfig = dataclasses.field(default_factory=RelevanceConfig)


def parse_locations(flat):
    if len(flat) == 0 or len(flat) % 2:
        raise ConfigurationError(
            f"Locations must be non-empty lon/lat pairs, got {len(flat)} values"
        )
    return [(flat[i], flat[i + 1]) for i in range(0, len(flat), 2)]


def load_data(path: pathlib.Path):
    """Load predictors, baseline and template from an .npz archive."""
    with np.load(path, allow_pickle=False) as archive:
        data = {key: archive[key] for key in archive.files}

    missing = {"test", "baseline", "template"} - data.keys()
    if missing:
        raise ConfigurationError(f"{path} is missing arrays: {sorted(missing)}")

    test = data["test"]
    if "lats" in data and "lons" in data:
        channels = data.get("channels", [f"var{i}" for i in range(test.shape[-1])])
        grid = InputGrid(data["lats"], data["lons"], list(channels))
    else:
        grid = InputGrid.from_shape(*test.shape[1:])
    return data, grid


def run(args: RelevanceCliArgs):
    device = "cpu" if not torch.cuda.is_available() else "cuda"
    logging.info(f"Using device: {device}")

    logging.info(f"Loading model from {args.model}")
    model = torch.jit.load(str(args.model), map_location=device)

    logging.info(f"Loading data from {args.data}")
    data, grid = load_data(args.data)
    template = OutputTemplate(data["template"])

    relevance_map = compute_relevance_maps(
        data["test"],
        model,
        args.loss,
        parse_locations(args.locations),
        template,
        data["baseline"],
        config=args.relevance,
        grid=grid,
        targets=data.get("targets"),
        channels_first=args.channels_first,
    )
    if "times" in data:
        relevance_map.times = data["times"]

    args.output_dir.mkdir(parents=True, exist_ok=True)
    nc_path = args.output_dir / "relevance.nc"
    relevance_map.to_netcdf(nc_path)
    logging.info(f"Saved relevance maps to {nc_path}")

    if not args.no_plot:
        for idx in range(len(relevance_map.locations)):
            fig_path = args.output_dir / f"relevance_loc{idx}.png"
            visualize_relevance(relevance_map, fig_path, location=idx)
            logging.info(f"Saved relevance visualization to {fig_path}")

    if relevance_map.failed_samples:
        logging.warning(
            f"Failed samples: {sorted(relevance_map.failed_samples)}"
        )
    return relevance_map


def main():
    """Main entry point for relevance analysis CLI."""
    args = draccus.parse(config_class=RelevanceCliArgs)
    run(args)


if __name__ == "__main__":
    main()
