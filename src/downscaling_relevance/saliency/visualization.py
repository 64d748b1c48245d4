"""Visualization functions for relevance maps."""

import logging

import matplotlib.pyplot as plt
import numpy as np


def _extent(lons, lats):
    """imshow extent covering whole cells of a regular grid."""
    dlon = (lons[-1] - lons[0]) / max(len(lons) - 1, 1) if len(lons) > 1 else 1.0
    dlat = (lats[-1] - lats[0]) / max(len(lats) - 1, 1) if len(lats) > 1 else 1.0
    return [
        lons[0] - dlon / 2,
        lons[-1] + dlon / 2,
        lats[0] - dlat / 2,
        lats[-1] + dlat / 2,
    ]


def visualize_relevance(
    relevance_map,
    output_path,
    location=0,
    reduction="abs_mean",
    cmap="Reds",
):
    """
    Plot the relevance of every predictor channel for one output location.

    Creates one panel per channel showing the relevance aggregated over all
    samples (by default the mean absolute value), with the output location
    marked. A common colour scale is used so channels can be compared.

    Args:
        relevance_map: RelevanceMap to render
        output_path: Path to save the figure
        location: Index of the output location to plot
        reduction: Aggregation over samples ("abs_mean", "mean", "abs_max")
        cmap: Matplotlib colormap name

    Returns:
        np.ndarray: The aggregated (row, col, channel) relevance that was plotted
    """
    grid = relevance_map.grid
    aggregated = relevance_map.aggregate(reduction)[..., location]
    n_channels = aggregated.shape[-1]
    loc = relevance_map.locations[location]

    diverging = reduction == "mean"
    finite = aggregated[np.isfinite(aggregated)]
    vmax = float(np.abs(finite).max()) if finite.size else 1.0
    vmax = vmax if vmax > 0 else 1.0
    vmin = -vmax if diverging else 0.0
    if diverging and cmap == "Reds":
        cmap = "RdBu_r"

    n_cols = min(n_channels, 4)
    n_rows = int(np.ceil(n_channels / n_cols))
    fig, axes = plt.subplots(
        n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False
    )
    extent = _extent(grid.lons, grid.lats)
    origin = "lower" if grid.lats[0] <= grid.lats[-1] else "upper"

    for idx in range(n_rows * n_cols):
        ax = axes[idx // n_cols, idx % n_cols]
        if idx >= n_channels:
            ax.axis("off")
            continue
        image = ax.imshow(
            aggregated[..., idx],
            cmap=cmap,
            vmin=vmin,
            vmax=vmax,
            extent=extent,
            origin=origin,
            aspect="auto",
        )
        ax.plot(loc.lon, loc.lat, marker="x", color="black", markersize=8)
        total = np.nansum(np.abs(aggregated[..., idx]))
        ax.set_title(f"{grid.channels[idx]}\n(Total: {total:.2e})")
        ax.set_xlabel("Longitude")
        ax.set_ylabel("Latitude")

    fig.colorbar(image, ax=axes.ravel().tolist(), shrink=0.8, label="Relevance")

    title = f"Relevance ({reduction}) for location lon={loc.lon:.2f}, lat={loc.lat:.2f}"
    if relevance_map.failed_samples:
        title += f"\n{len(relevance_map.failed_samples)} samples skipped"
    fig.suptitle(title, fontsize=14)

    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    # Log statistics
    channel_totals = np.nansum(np.abs(aggregated), axis=(0, 1))
    grand_total = channel_totals.sum()
    for name, total in zip(grid.channels, channel_totals):
        share = total / grand_total if grand_total > 0 else 0.0
        logging.info(f"Channel {name}: total relevance {total:.2e} ({share:.1%})")
    if grand_total == 0:
        logging.warning("All relevance scores are zero - model may ignore its inputs")

    return aggregated
