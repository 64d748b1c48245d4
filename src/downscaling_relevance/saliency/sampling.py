"""Replacement samplers for perturbation units."""

import logging
import threading

import numpy as np

from .config import RelevanceConfig, SamplerType
from .units import PerturbationUnit


class MarginalSampler:
    """
    Draw replacements from the empirical marginal of the training baseline.

    Every copy picks one baseline day uniformly at random and takes the
    unit's values from that day at the same grid positions.
    """

    def __init__(self, baseline: np.ndarray):
        self.baseline = baseline

    def draw(self, sample, unit: PerturbationUnit, num, rng):
        days = rng.integers(0, len(self.baseline), size=num)
        return self.baseline[days, unit.rows, unit.cols, unit.channels]


class ConditionalSampler:
    """
    Draw a window from a Gaussian conditioned on its surrounding padding.

    For a window of side k the model is fitted on the (k + 2l)-sided patch
    around it (clipped at the grid edges) over all baseline days. The window
    is then drawn from the conditional distribution given the padding values
    of the sample being explained. Only single-channel units are supported.
    """

    def __init__(self, baseline: np.ndarray, patch_size: int, ridge: float = 1e-6):
        self.baseline = baseline
        self.patch_size = patch_size
        self.ridge = ridge
        self._stats = {}
        self._lock = threading.Lock()

    def _padded_bounds(self, unit):
        _, rows, cols, _ = self.baseline.shape
        l = self.patch_size
        r0 = max(0, unit.rows.start - l)
        r1 = min(rows, unit.rows.stop + l)
        c0 = max(0, unit.cols.start - l)
        c1 = min(cols, unit.cols.stop + l)
        inner = np.zeros((r1 - r0, c1 - c0), dtype=bool)
        inner[
            unit.rows.start - r0 : unit.rows.stop - r0,
            unit.cols.start - c0 : unit.cols.stop - c0,
        ] = True
        return (slice(r0, r1), slice(c0, c1)), inner.ravel()

    def _fit(self, unit):
        key = (
            unit.rows.start,
            unit.rows.stop,
            unit.cols.start,
            unit.cols.stop,
            unit.channels.start,
        )
        with self._lock:
            if key in self._stats:
                return self._stats[key]

        (prow, pcol), inner = self._padded_bounds(unit)
        patches = self.baseline[:, prow, pcol, unit.channels.start]
        patches = patches.reshape(len(patches), -1)
        mean = patches.mean(axis=0)
        cov = np.atleast_2d(np.cov(patches, rowvar=False))
        cov = cov + self.ridge * np.eye(len(cov))

        outer = ~inner
        mean_in = mean[inner]
        cov_in = cov[np.ix_(inner, inner)]
        if outer.any():
            cov_oo = cov[np.ix_(outer, outer)]
            cov_oi = cov[np.ix_(outer, inner)]
            gain = np.linalg.solve(cov_oo, cov_oi).T
            cov_in = cov_in - gain @ cov_oi
        else:
            gain = None

        stats = (prow, pcol, inner, mean, mean_in, gain, _sqrt_factor(cov_in))
        with self._lock:
            self._stats[key] = stats
        return stats

    def draw(self, sample, unit: PerturbationUnit, num, rng):
        prow, pcol, inner, mean, mean_in, gain, factor = self._fit(unit)

        cond_mean = mean_in
        if gain is not None:
            padding = sample[prow, pcol, unit.channels.start].ravel()[~inner]
            cond_mean = mean_in + gain @ (padding - mean[~inner])

        noise = rng.standard_normal((num, len(cond_mean)))
        draws = cond_mean + noise @ factor.T
        return draws.reshape((num,) + unit.shape)


def _sqrt_factor(cov):
    """Matrix square root of a covariance, clipping round-off negative eigenvalues."""
    cov = 0.5 * (cov + cov.T)
    eigvals, eigvecs = np.linalg.eigh(cov)
    return eigvecs * np.sqrt(np.clip(eigvals, 0.0, None))


def build_sampler(config: RelevanceConfig, baseline: np.ndarray):
    if config.sampler == SamplerType.CONDITIONAL:
        logging.info(
            f"Using conditional sampler (window {config.window_size}, "
            f"padding {config.patch_size})"
        )
        return ConditionalSampler(baseline, config.patch_size)
    return MarginalSampler(baseline)
