"""Perturbation units: the groups of input cells replaced together."""

from dataclasses import dataclass

import numpy as np

from .config import MarginalizationMode


@dataclass(frozen=True)
class PerturbationUnit:
    """A block ``inputs[:, rows, cols, channels]`` perturbed as one."""

    index: int
    rows: slice
    cols: slice
    channels: slice

    @property
    def shape(self) -> tuple[int, int, int]:
        return (
            self.rows.stop - self.rows.start,
            self.cols.stop - self.cols.start,
            self.channels.stop - self.channels.start,
        )


def iter_units(mode: MarginalizationMode, rows, cols, n_channels, window_size=1):
    """
    Enumerate the perturbation units of a rows x cols x n_channels grid.

    The enumeration order is fixed; ``unit.index`` identifies a unit
    independently of the order in which units are later processed.
    """
    index = 0
    if mode == MarginalizationMode.CHANNEL:
        for c in range(n_channels):
            yield PerturbationUnit(
                index, slice(0, rows), slice(0, cols), slice(c, c + 1)
            )
            index += 1
        return

    k = window_size
    if mode == MarginalizationMode.WINDOW:
        channel_groups = [slice(c, c + 1) for c in range(n_channels)]
    else:
        channel_groups = [slice(0, n_channels)]

    for channels in channel_groups:
        for r in range(rows - k + 1):
            for col in range(cols - k + 1):
                yield PerturbationUnit(
                    index, slice(r, r + k), slice(col, col + k), channels
                )
                index += 1


class RelevanceAccumulator:
    """Sums unit scores per cell and averages over the units covering it."""

    def __init__(self, rows, cols, n_channels, n_locations):
        self.sums = np.zeros((rows, cols, n_channels, n_locations))
        self.counts = np.zeros((rows, cols, n_channels, 1))

    def add(self, unit: PerturbationUnit, score: np.ndarray):
        self.sums[unit.rows, unit.cols, unit.channels] += score
        self.counts[unit.rows, unit.cols, unit.channels] += 1

    def result(self) -> np.ndarray:
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(self.counts > 0, self.sums / self.counts, np.nan)
