import threading

import numpy as np
import pytest
import torch
from torch import nn

from downscaling_relevance.errors import ConfigurationError, DomainError
from downscaling_relevance.grid import InputGrid, OutputTemplate
from downscaling_relevance.saliency import (
    MarginalizationMode,
    RelevanceConfig,
    RelevanceEngine,
    ScoreType,
    compute_relevance_maps,
)

SINGLE_POINT = OutputTemplate([[0.0, 0.0]])
LOCATIONS = [(0.0, 0.0)]


def constant_gaussian(batch):
    """Gaussian (mean=1, log_scale=0) regardless of the input."""
    return np.tile([1.0, 0.0], (len(batch), 1))


class LinearGaussian:
    """Mean is a weighted sum of the inputs, log scale fixed at zero."""

    def __init__(self, weights):
        self.weights = weights
        self.calls = 0

    def __call__(self, batch):
        self.calls += 1
        mean = (batch * self.weights).sum(axis=(1, 2, 3))
        return np.stack([mean, np.zeros_like(mean)], axis=-1)


def integer_field(rng, shape):
    # Integer-valued floats keep sums exact whatever the summation order.
    return rng.integers(-5, 6, size=shape).astype(float)


class TestEndToEnd:
    def setup_method(self):
        self.rng = np.random.default_rng(0)
        self.test_inputs = self.rng.normal(size=(4, 3, 3, 2))
        self.baseline = self.rng.normal(size=(20, 3, 3, 2))

    def test_constant_model_has_zero_relevance(self):
        config = RelevanceConfig(num_samples=5)
        result = compute_relevance_maps(
            self.test_inputs,
            constant_gaussian,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=config,
        )
        assert result.values.shape == (4, 3, 3, 2, 1)
        np.testing.assert_array_equal(result.values, np.zeros((4, 3, 3, 2, 1)))
        assert result.failed_samples == {}
        assert not result.aborted

    @pytest.mark.parametrize(
        "mode", [MarginalizationMode.CHANNEL, MarginalizationMode.WINDOW, MarginalizationMode.SPATIAL]
    )
    def test_identical_replacements_give_exact_zero(self, mode):
        sample = integer_field(self.rng, (1, 3, 3, 2))
        baseline = np.repeat(sample, 6, axis=0)
        model = LinearGaussian(integer_field(self.rng, (3, 3, 2)))
        config = RelevanceConfig(mode=mode, window_size=2, num_samples=4)
        result = compute_relevance_maps(
            sample, model, "gaussian", LOCATIONS, SINGLE_POINT, baseline, config=config
        )
        np.testing.assert_array_equal(result.values, np.zeros((1, 3, 3, 2, 1)))

    @pytest.mark.parametrize(
        "mode", [MarginalizationMode.CHANNEL, MarginalizationMode.SPATIAL]
    )
    def test_identical_replacements_give_exact_zero_for_torch_conv(self, mode):
        torch.manual_seed(0)
        model = nn.Sequential(
            nn.Conv2d(4, 8, kernel_size=3, padding=1),
            nn.ReLU(),
            nn.Flatten(),
            nn.Linear(8 * 16 * 16, 2),
        )
        sample = self.rng.normal(size=(1, 16, 16, 4))
        baseline = np.repeat(sample, 6, axis=0)
        config = RelevanceConfig(mode=mode, window_size=4, num_samples=64)
        result = compute_relevance_maps(
            sample,
            model,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            baseline,
            config=config,
            channels_first=True,
        )
        np.testing.assert_array_equal(result.values, np.zeros((1, 16, 16, 4, 1)))

    def test_metadata_follows_grid(self):
        grid = InputGrid(
            lats=[40.0, 41.0, 42.0], lons=[-4.0, -3.0, -2.0], channels=["ta850", "hus850"]
        )
        template = OutputTemplate([[-3.0, 41.0], [-2.5, 41.5]])

        def two_point_model(batch):
            return np.tile([1.0, 2.0, 0.0, 0.0], (len(batch), 1))

        result = compute_relevance_maps(
            self.test_inputs,
            two_point_model,
            "gaussian",
            [(-2.6, 41.4)],
            template,
            self.baseline,
            config=RelevanceConfig(num_samples=2),
            grid=grid,
        )
        assert result.location_indices == [1]
        assert result.grid.channels == ["ta850", "hus850"]
        assert result.config["mode"] == "channel"


class TestDeterminism:
    def setup_method(self):
        rng = np.random.default_rng(1)
        self.test_inputs = rng.normal(size=(3, 4, 4, 2))
        self.baseline = rng.normal(size=(30, 4, 4, 2))
        self.model = LinearGaussian(rng.normal(size=(4, 4, 2)))

    def _run(self, **kwargs):
        config = RelevanceConfig(**kwargs)
        return compute_relevance_maps(
            self.test_inputs,
            self.model,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=config,
        ).values

    def test_same_seed_same_map(self):
        first = self._run(mode="window", window_size=2, num_samples=5, seed=3)
        second = self._run(mode="window", window_size=2, num_samples=5, seed=3)
        np.testing.assert_array_equal(first, second)

    def test_different_seed_different_map(self):
        first = self._run(num_samples=5, seed=3)
        second = self._run(num_samples=5, seed=4)
        assert not np.allclose(first, second)

    def test_worker_count_does_not_change_result(self):
        sequential = self._run(num_samples=5, num_workers=1)
        threaded = self._run(num_samples=5, num_workers=3)
        np.testing.assert_array_equal(sequential, threaded)

    def test_batch_size_does_not_change_result(self):
        whole = self._run(num_samples=7, batch_size=256)
        chunked = self._run(num_samples=7, batch_size=2)
        np.testing.assert_allclose(whole, chunked)

    def test_unit_order_does_not_change_scores(self):
        config = RelevanceConfig(mode="window", window_size=2, num_samples=4)
        engine = RelevanceEngine(
            self.model, "gaussian", SINGLE_POINT, [0], self.baseline, config
        )
        sample = self.test_inputs[0]
        reference = engine.evaluate(sample[np.newaxis])[0]

        forward = {u.index: engine.score_unit(0, sample, u, reference) for u in engine.units}
        backward = {
            u.index: engine.score_unit(0, sample, u, reference)
            for u in reversed(engine.units)
        }
        for index, score in forward.items():
            np.testing.assert_array_equal(score, backward[index])

    def test_variance_shrinks_with_more_samples(self):
        sample = self.test_inputs[:1]
        variances = []
        for num_samples in (1, 10, 100):
            scores = [
                compute_relevance_maps(
                    sample,
                    self.model,
                    "gaussian",
                    LOCATIONS,
                    SINGLE_POINT,
                    self.baseline,
                    config=RelevanceConfig(num_samples=num_samples, seed=seed),
                ).values[0, 0, 0, 0, 0]
                for seed in range(20)
            ]
            variances.append(np.var(scores))
        assert variances[0] > variances[1] > variances[2]


class TestMarginalizationModes:
    def setup_method(self):
        self.rng = np.random.default_rng(2)
        self.test_inputs = integer_field(self.rng, (2, 3, 3, 2))
        self.baseline = integer_field(self.rng, (25, 3, 3, 2))

    def _run(self, model, **kwargs):
        return compute_relevance_maps(
            self.test_inputs,
            model,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=RelevanceConfig(num_samples=8, **kwargs),
        ).values

    def test_channel_mode_broadcasts_over_grid(self):
        weights = np.zeros((3, 3, 2))
        weights[..., 1] = 1.0
        values = self._run(LinearGaussian(weights), mode="channel")

        np.testing.assert_array_equal(values[..., 0, :], 0.0)
        for i in range(2):
            channel = values[i, :, :, 1, 0]
            np.testing.assert_array_equal(channel, np.full((3, 3), channel[0, 0]))

    def test_window_mode_localizes_single_pixel(self):
        weights = np.zeros((3, 3, 2))
        weights[1, 1, 0] = 1.0
        values = self._run(LinearGaussian(weights), mode="window", window_size=1)

        mask = np.zeros((3, 3, 2), dtype=bool)
        mask[1, 1, 0] = True
        np.testing.assert_array_equal(values[:, ~mask], 0.0)

    def test_spatial_mode_shares_score_across_channels(self):
        model = LinearGaussian(integer_field(self.rng, (3, 3, 2)))
        values = self._run(model, mode="spatial", window_size=1)
        np.testing.assert_array_equal(values[..., 0, :], values[..., 1, :])

    def test_absolute_scores(self):
        model = LinearGaussian(integer_field(self.rng, (3, 3, 2)))
        signed = self._run(model, seed=5)
        absolute = self._run(model, seed=5, absolute=True)
        np.testing.assert_array_equal(absolute, np.abs(signed))

    def test_conditional_sampler_in_window_mode(self):
        model = LinearGaussian(integer_field(self.rng, (3, 3, 2)))
        values = self._run(
            model, mode="window", window_size=1, patch_size=1, sampler="conditional"
        )
        assert values.shape == (2, 3, 3, 2, 1)
        assert np.isfinite(values).all()


class TestScoring:
    def setup_method(self):
        rng = np.random.default_rng(3)
        self.test_inputs = rng.normal(size=(2, 3, 3, 1))
        self.baseline = rng.normal(size=(10, 3, 3, 1))
        self.targets = rng.normal(size=(2, 1))

    def test_log_likelihood_of_constant_model_is_zero(self):
        result = compute_relevance_maps(
            self.test_inputs,
            constant_gaussian,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=RelevanceConfig(score=ScoreType.LOG_LIKELIHOOD, num_samples=3),
            targets=self.targets,
        )
        np.testing.assert_array_equal(result.values, 0.0)

    def test_log_likelihood_requires_targets(self):
        with pytest.raises(ConfigurationError):
            compute_relevance_maps(
                self.test_inputs,
                constant_gaussian,
                "gaussian",
                LOCATIONS,
                SINGLE_POINT,
                self.baseline,
                config=RelevanceConfig(score="log_likelihood"),
            )

    def test_targets_shape_checked(self):
        with pytest.raises(ConfigurationError):
            compute_relevance_maps(
                self.test_inputs,
                constant_gaussian,
                "gaussian",
                LOCATIONS,
                SINGLE_POINT,
                self.baseline,
                config=RelevanceConfig(score="log_likelihood"),
                targets=np.zeros((3, 1)),
            )

    def test_bernoulli_gamma_torch_model(self):
        torch.manual_seed(0)
        model = nn.Sequential(nn.Flatten(), nn.Linear(9, 3), nn.Sigmoid())
        model.train()
        result = compute_relevance_maps(
            self.test_inputs,
            model,
            "bernoulli_gamma",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=RelevanceConfig(num_samples=4, absolute=True),
        )
        assert np.isfinite(result.values).all()
        assert (result.values >= 0).all()
        assert model.training


class TestValidation:
    def setup_method(self):
        rng = np.random.default_rng(4)
        self.test_inputs = rng.normal(size=(2, 3, 3, 2))
        self.baseline = rng.normal(size=(10, 3, 3, 2))
        self.model = LinearGaussian(np.ones((3, 3, 2)))

    def _run(self, **overrides):
        kwargs = dict(
            test_inputs=self.test_inputs,
            model=self.model,
            loss="gaussian",
            output_locations=LOCATIONS,
            template=SINGLE_POINT,
            baseline=self.baseline,
            config=RelevanceConfig(num_samples=2),
        )
        kwargs.update(overrides)
        return compute_relevance_maps(**kwargs)

    def test_non_positive_sample_count(self):
        with pytest.raises(DomainError):
            self._run(config=RelevanceConfig(num_samples=0))
        assert self.model.calls == 0

    def test_location_outside_template(self):
        template = OutputTemplate([[0.0, 0.0], [1.0, 1.0]])
        with pytest.raises(DomainError):
            self._run(template=template, output_locations=[(5.0, 0.5)])
        assert self.model.calls == 0

    def test_empty_locations(self):
        with pytest.raises(DomainError):
            self._run(output_locations=[])

    def test_parameter_count_mismatch(self):
        def three_outputs(batch):
            return np.zeros((len(batch), 3))

        with pytest.raises(ConfigurationError):
            self._run(model=three_outputs)

    def test_model_input_shape_mismatch(self):
        model = nn.Sequential(nn.Flatten(), nn.Linear(18, 2))
        with pytest.raises(ConfigurationError):
            self._run(
                model=model,
                test_inputs=np.zeros((2, 3, 3, 3)),
                baseline=np.zeros((10, 3, 3, 3)),
            )

    def test_conditional_sampler_needs_two_baseline_days(self):
        config = RelevanceConfig(
            mode="window", sampler="conditional", patch_size=1, num_samples=2
        )
        with pytest.raises(ConfigurationError):
            self._run(config=config, baseline=self.test_inputs[:1])
        assert self.model.calls == 0

    def test_baseline_grid_mismatch(self):
        with pytest.raises(ConfigurationError):
            self._run(baseline=np.zeros((10, 4, 3, 2)))

    def test_inputs_must_be_four_dimensional(self):
        with pytest.raises(ConfigurationError):
            self._run(test_inputs=np.zeros((3, 3, 2)))

    def test_grid_mismatch(self):
        grid = InputGrid(lats=[0.0, 1.0], lons=[0.0, 1.0, 2.0], channels=["a", "b"])
        with pytest.raises(ConfigurationError):
            self._run(grid=grid)

    def test_window_larger_than_grid(self):
        with pytest.raises(ConfigurationError):
            self._run(config=RelevanceConfig(mode="window", window_size=4))

    def test_conditional_sampler_needs_window_mode(self):
        with pytest.raises(ConfigurationError):
            self._run(config=RelevanceConfig(sampler="conditional"))

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError):
            RelevanceConfig(mode="pixel")


class TestFailuresAndCancellation:
    def setup_method(self):
        rng = np.random.default_rng(5)
        self.test_inputs = rng.normal(size=(3, 3, 3, 1))
        self.baseline = rng.normal(size=(10, 3, 3, 1))

    def test_non_finite_sample_is_recorded_and_skipped(self):
        self.test_inputs[1, 0, 0, 0] = 1000.0

        def unstable(batch):
            mean = batch.sum(axis=(1, 2, 3))
            mean = np.where(batch[:, 0, 0, 0] > 100.0, np.nan, mean)
            return np.stack([mean, np.zeros_like(mean)], axis=-1)

        result = compute_relevance_maps(
            self.test_inputs,
            unstable,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=RelevanceConfig(num_samples=3),
        )
        assert list(result.failed_samples) == [1]
        assert np.isnan(result.values[1]).all()
        assert np.isfinite(result.values[[0, 2]]).all()
        np.testing.assert_array_equal(result.completed, [True, False, True])

    def test_cancel_between_samples(self):
        cancel = threading.Event()

        def cancelling(batch):
            # Perturbed copies come in batches larger than one.
            if len(batch) > 1:
                cancel.set()
            return constant_gaussian(batch)

        result = compute_relevance_maps(
            self.test_inputs,
            cancelling,
            "gaussian",
            LOCATIONS,
            SINGLE_POINT,
            self.baseline,
            config=RelevanceConfig(num_samples=3),
            cancel_event=cancel,
        )
        assert result.aborted
        assert np.isfinite(result.values[0]).all()
        assert np.isnan(result.values[1:]).all()
