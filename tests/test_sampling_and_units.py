import numpy as np

from downscaling_relevance.saliency.config import MarginalizationMode, RelevanceConfig
from downscaling_relevance.saliency.sampling import (
    ConditionalSampler,
    MarginalSampler,
    build_sampler,
)
from downscaling_relevance.saliency.units import (
    PerturbationUnit,
    RelevanceAccumulator,
    iter_units,
)


class TestUnits:
    def test_channel_mode(self):
        units = list(iter_units(MarginalizationMode.CHANNEL, 4, 5, 3))
        assert len(units) == 3
        assert all(u.shape == (4, 5, 1) for u in units)
        assert [u.index for u in units] == [0, 1, 2]

    def test_window_mode(self):
        units = list(iter_units(MarginalizationMode.WINDOW, 4, 5, 3, window_size=2))
        assert len(units) == 3 * 3 * 4
        assert all(u.shape == (2, 2, 1) for u in units)

    def test_spatial_mode(self):
        units = list(iter_units(MarginalizationMode.SPATIAL, 4, 5, 3, window_size=3))
        assert len(units) == 2 * 3
        assert all(u.shape == (3, 3, 3) for u in units)

    def test_accumulator_averages_overlapping_windows(self):
        accumulator = RelevanceAccumulator(3, 3, 1, 2)
        for unit in iter_units(MarginalizationMode.WINDOW, 3, 3, 1, window_size=2):
            accumulator.add(unit, np.array([unit.index, 1.0]))

        result = accumulator.result()
        assert result.shape == (3, 3, 1, 2)
        np.testing.assert_array_equal(result[..., 1], 1.0)
        # Corner cells are covered by a single window, the centre by all four.
        assert result[0, 0, 0, 0] == 0.0
        assert result[2, 2, 0, 0] == 3.0
        assert result[1, 1, 0, 0] == 1.5


class TestMarginalSampler:
    def test_draws_come_from_baseline_days(self):
        baseline = np.arange(5)[:, None, None, None] * np.ones((5, 3, 3, 2))
        sampler = MarginalSampler(baseline)
        unit = PerturbationUnit(0, slice(1, 3), slice(0, 2), slice(1, 2))
        draws = sampler.draw(baseline[0], unit, 50, np.random.default_rng(0))

        assert draws.shape == (50, 2, 2, 1)
        # Each copy is one whole day, so every cell of a draw has the same value.
        per_copy = draws.reshape(50, -1)
        np.testing.assert_array_equal(per_copy, per_copy[:, :1].repeat(4, axis=1))
        assert set(np.unique(draws)) <= set(range(5))

    def test_build_sampler_default(self):
        sampler = build_sampler(RelevanceConfig(), np.zeros((2, 2, 2, 1)))
        assert isinstance(sampler, MarginalSampler)


class TestConditionalSampler:
    def setup_method(self):
        rng = np.random.default_rng(0)
        # Spatially uniform fields: a window is fully determined by its padding.
        levels = rng.normal(size=200)
        self.baseline = levels[:, None, None, None] * np.ones((200, 5, 5, 1))

    def test_window_follows_padding(self):
        sampler = ConditionalSampler(self.baseline, patch_size=1)
        sample = np.full((5, 5, 1), 0.8)
        unit = PerturbationUnit(0, slice(2, 3), slice(1, 3), slice(0, 1))
        draws = sampler.draw(sample, unit, 20, np.random.default_rng(1))

        assert draws.shape == (20, 1, 2, 1)
        np.testing.assert_allclose(draws, 0.8, atol=1e-2)

    def test_edge_windows_are_clipped(self):
        sampler = ConditionalSampler(self.baseline, patch_size=2)
        sample = np.full((5, 5, 1), -0.3)
        unit = PerturbationUnit(0, slice(0, 2), slice(3, 5), slice(0, 1))
        draws = sampler.draw(sample, unit, 10, np.random.default_rng(2))

        assert draws.shape == (10, 2, 2, 1)
        np.testing.assert_allclose(draws, -0.3, atol=1e-2)

    def test_without_padding_draws_from_unconditional_gaussian(self):
        sampler = ConditionalSampler(self.baseline, patch_size=0)
        unit = PerturbationUnit(0, slice(0, 1), slice(0, 1), slice(0, 1))
        draws = sampler.draw(
            self.baseline[0], unit, 5000, np.random.default_rng(3)
        )
        assert abs(draws.mean() - self.baseline[:, 0, 0, 0].mean()) < 0.1
        assert abs(draws.std() - self.baseline[:, 0, 0, 0].std()) < 0.1

    def test_statistics_are_cached_per_window(self):
        sampler = ConditionalSampler(self.baseline, patch_size=1)
        unit = PerturbationUnit(0, slice(1, 2), slice(1, 2), slice(0, 1))
        sampler.draw(self.baseline[0], unit, 2, np.random.default_rng(0))
        sampler.draw(self.baseline[1], unit, 2, np.random.default_rng(0))
        assert len(sampler._stats) == 1
