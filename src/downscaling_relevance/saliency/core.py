"""Core relevance computation: prediction-difference analysis."""

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import torch

from downscaling_relevance.errors import ConfigurationError, NumericalError
from downscaling_relevance.grid import InputGrid, OutputLocation, OutputTemplate
from downscaling_relevance.losses import build_loss

from .config import RelevanceConfig, SamplerType, ScoreType
from .models import evaluation_context, predict_parameters
from .relevance_map import RelevanceMap
from .sampling import build_sampler
from .units import RelevanceAccumulator, iter_units


class RelevanceEngine:
    """
    Scores perturbation units of single samples against a trained model.

    An engine is built for one run. It holds only read-only state (model,
    loss, baseline, resolved locations) plus the sampler's fitted statistics,
    so samples and units can be scored in any order or in parallel.
    """

    def __init__(
        self,
        model,
        loss,
        template: OutputTemplate,
        location_indices,
        baseline: np.ndarray,
        config: RelevanceConfig,
        channels_first: bool = False,
    ):
        self.model = model
        self.loss = build_loss(loss)
        self.template = template
        self.location_indices = list(location_indices)
        self.baseline = baseline
        self.config = config
        self.channels_first = channels_first
        self.sampler = build_sampler(config, baseline)

        _, rows, cols, n_channels = baseline.shape
        self.units = list(
            iter_units(config.mode, rows, cols, n_channels, config.window_size)
        )

    def evaluate(self, batch: np.ndarray, target=None) -> np.ndarray:
        """
        Score function at the output locations for a batch of inputs.

        Returns:
            np.ndarray: (B, n_locations) expected values, or log-likelihoods of
                ``target`` (n_points,) when scoring by likelihood.
        """
        output = predict_parameters(self.model, batch, self.channels_first)
        params = self.loss.split(output, self.template.n_points)
        params = {k: v[:, self.location_indices] for k, v in params.items()}

        if self.config.score == ScoreType.LOG_LIKELIHOOD:
            observed = torch.as_tensor(
                np.asarray(target, dtype=np.float64)[self.location_indices]
            )
            values = -self.loss.nll(observed, params, reduction="none")
        else:
            values = self.loss.expectation(params)
        return values.numpy()

    def _rng(self, sample_index, unit):
        return np.random.default_rng([self.config.seed, sample_index, unit.index])

    def score_unit(self, sample_index, sample, unit, reference, target=None):
        """
        Relevance of one unit of one sample at every output location.

        The difference to the reference is taken per perturbed copy and then
        averaged, so copies identical to the sample contribute exactly zero.
        """
        num = self.config.num_samples
        replacements = self.sampler.draw(sample, unit, num, self._rng(sample_index, unit))
        original = sample[unit.rows, unit.cols, unit.channels]

        diffs = []
        for start in range(0, num, self.config.batch_size):
            chunk = replacements[start : start + self.config.batch_size]
            copies = np.repeat(sample[np.newaxis], len(chunk), axis=0)
            copies[:, unit.rows, unit.cols, unit.channels] = chunk
            values = self.evaluate(copies, target)
            if not np.isfinite(values).all():
                raise NumericalError(
                    f"Non-finite score for perturbed copies of unit {unit.index}",
                    sample_index,
                )
            delta = reference - values
            # Batched kernels may round differently from the single-sample
            # reference; an unchanged copy is pinned to zero.
            unchanged = (chunk == original).reshape(len(chunk), -1).all(axis=1)
            delta[unchanged] = 0.0
            diffs.append(delta)
            del copies

        score = np.concatenate(diffs).mean(axis=0)
        if self.config.absolute:
            score = np.abs(score)
        return score

    def explain_sample(self, sample_index, sample, target=None) -> np.ndarray:
        """Relevance map (rows, cols, channels, n_locations) of one sample."""
        reference = self.evaluate(sample[np.newaxis], target)[0]
        if not np.isfinite(reference).all():
            raise NumericalError(
                f"Non-finite reference score for sample {sample_index}", sample_index
            )

        rows, cols, n_channels = sample.shape
        accumulator = RelevanceAccumulator(
            rows, cols, n_channels, len(self.location_indices)
        )
        for unit in self.units:
            score = self.score_unit(sample_index, sample, unit, reference, target)
            accumulator.add(unit, score)
        return accumulator.result()


def _validate_inputs(test_inputs, baseline, grid, config, targets, n_points):
    if test_inputs.ndim != 4 or len(test_inputs) == 0:
        raise ConfigurationError(
            f"Test inputs must be a non-empty (sample, row, col, channel) tensor, "
            f"got shape {test_inputs.shape}"
        )
    if baseline.ndim != 4 or len(baseline) == 0:
        raise ConfigurationError(
            f"Baseline must be a non-empty (sample, row, col, channel) tensor, "
            f"got shape {baseline.shape}"
        )
    if baseline.shape[1:] != test_inputs.shape[1:]:
        raise ConfigurationError(
            f"Baseline grid {baseline.shape[1:]} does not match test inputs "
            f"{test_inputs.shape[1:]}"
        )
    grid.check_matches(test_inputs)
    config.validate(*test_inputs.shape[1:3])
    if config.sampler == SamplerType.CONDITIONAL and len(baseline) < 2:
        raise ConfigurationError(
            f"The conditional sampler needs at least 2 baseline days to estimate "
            f"a covariance, got {len(baseline)}"
        )

    if config.score == ScoreType.LOG_LIKELIHOOD:
        if targets is None:
            raise ConfigurationError("Scoring by log-likelihood requires targets")
        if targets.shape != (len(test_inputs), n_points):
            raise ConfigurationError(
                f"Targets must have shape {(len(test_inputs), n_points)}, "
                f"got {targets.shape}"
            )


def compute_relevance_maps(
    test_inputs,
    model,
    loss,
    output_locations,
    template: OutputTemplate,
    baseline,
    config: RelevanceConfig = None,
    grid: InputGrid = None,
    targets=None,
    channels_first: bool = False,
    cancel_event=None,
) -> RelevanceMap:
    """
    Compute prediction-difference relevance maps for every test sample.

    For each sample and perturbation unit, ``num_samples`` copies of the sample
    get the unit replaced by draws from the baseline; the relevance is the
    mean difference between the unperturbed and perturbed scores (expected
    value or log-likelihood) at each output location.

    Args:
        test_inputs: Predictors (sample, row, col, channel) to explain
        model: Trained model (torch module, Keras-like or callable)
        loss: Loss name, LossFunction member or DistributionalLoss instance
        output_locations: Ordered (lon, lat) pairs to explain
        template: Coordinates of every point the model predicts
        baseline: Training-period predictors the replacements are drawn from
        config: Run settings (RelevanceConfig defaults if None)
        grid: Predictor coordinates and channel names for the result metadata
        targets: Observed predictands (sample, n_points) for likelihood scoring
        channels_first: Feed the model (B, channels, rows, cols)
        cancel_event: threading.Event; once set, remaining samples are skipped

    Returns:
        RelevanceMap: Scores of shape (sample, row, col, channel, location)

    Raises:
        ConfigurationError: Mismatched shapes or settings
        DomainError: Invalid locations or sample counts
    """
    config = config or RelevanceConfig()
    test_inputs = np.asarray(test_inputs, dtype=np.float64)
    baseline = np.asarray(baseline, dtype=np.float64)
    if targets is not None:
        targets = np.asarray(targets, dtype=np.float64)
    if grid is None and test_inputs.ndim == 4:
        grid = InputGrid.from_shape(*test_inputs.shape[1:])

    _validate_inputs(test_inputs, baseline, grid, config, targets, template.n_points)
    locations = [OutputLocation(*map(float, loc)) for loc in output_locations]
    location_indices = template.resolve(locations)

    engine = RelevanceEngine(
        model, loss, template, location_indices, baseline, config, channels_first
    )
    n_samples = len(test_inputs)
    values = np.full(test_inputs.shape + (len(locations),), np.nan)
    failed_samples = {}

    logging.info(
        f"Computing relevance maps: {n_samples} samples, {len(engine.units)} units "
        f"({config.mode.value} mode), {config.num_samples} draws per unit, "
        f"{len(locations)} locations"
    )

    def run_sample(i):
        if cancel_event is not None and cancel_event.is_set():
            return False
        target = targets[i] if targets is not None else None
        try:
            values[i] = engine.explain_sample(i, test_inputs[i], target)
        except NumericalError as e:
            logging.warning(f"Skipping sample {i}: {e}")
            failed_samples[i] = str(e)
        return True

    with evaluation_context(model):
        # Evaluate one sample so shape and layout mismatches fail before the run.
        try:
            first = predict_parameters(model, test_inputs[:1], channels_first)
        except (RuntimeError, ValueError) as e:
            raise ConfigurationError(
                f"Model cannot evaluate inputs of shape {test_inputs.shape[1:]} "
                f"(channels_first={channels_first}): {e}"
            ) from e
        engine.loss.split(first, template.n_points)
        if config.num_workers > 1:
            with ThreadPoolExecutor(max_workers=config.num_workers) as pool:
                processed = list(pool.map(run_sample, range(n_samples)))
        else:
            processed = []
            for i in range(n_samples):
                processed.append(run_sample(i))
                if (i + 1) % 100 == 0:
                    logging.info(f"Processed {i + 1}/{n_samples} samples")

    aborted = not all(processed)
    if aborted:
        logging.warning(
            f"Relevance computation aborted after {sum(processed)}/{n_samples} samples"
        )
    if failed_samples:
        logging.warning(
            f"{len(failed_samples)} of {n_samples} samples failed with non-finite scores"
        )

    return RelevanceMap(
        values=values,
        grid=grid,
        locations=locations,
        location_indices=location_indices,
        config=config.to_dict(),
        failed_samples=dict(sorted(failed_samples.items())),
        aborted=aborted,
    )
