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

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict

from downscaling_relevance.errors import ConfigurationError, DomainError


class MarginalizationMode(Enum):
    CHANNEL = "channel"
    WINDOW = "window"
    SPATIAL = "spatial"


class SamplerType(Enum):
    MARGINAL = "marginal"
    CONDITIONAL = "conditional"


class ScoreType(Enum):
    EXPECTATION = "expectation"
    LOG_LIKELIHOOD = "log_likelihood"


@dataclass
class RelevanceConfig:
    """Settings of one prediction-difference analysis run.

    Perturbation units per mode:
      - CHANNEL: every spatial cell of one predictor variable is replaced at
        once; the score is written to the whole channel.
      - WINDOW: a window_size x window_size window of one channel, slid with
        stride 1; a cell's score is the mean over the windows covering it.
      - SPATIAL: a window_size x window_size window across all channels
        jointly; the score is written to every channel of the window.

    Args:
        mode: Marginalization mode (see above).
        window_size: Side ``k`` of the perturbed window (WINDOW / SPATIAL).
        patch_size: Padding ``l`` around the window that the conditional
            sampler conditions on.
        sampler: MARGINAL draws the unit from a random baseline day,
            CONDITIONAL draws it from a Gaussian conditioned on its padding.
        num_samples: Replacement draws averaged per unit.
        score: EXPECTATION compares expected values, LOG_LIKELIHOOD compares
            the log-likelihood of observed targets.
        absolute: Report absolute instead of signed differences.
        seed: Base seed; every (sample, unit) gets its own generator from it.
        batch_size: Maximum number of perturbed copies per model call.
        num_workers: Threads processing samples in parallel.
    """

    mode: MarginalizationMode = MarginalizationMode.CHANNEL
    window_size: int = 1
    patch_size: int = 0
    sampler: SamplerType = SamplerType.MARGINAL
    num_samples: int = 10
    score: ScoreType = ScoreType.EXPECTATION
    absolute: bool = False
    seed: int = 0
    batch_size: int = 256
    num_workers: int = 1

    def __post_init__(self):
        try:
            self.mode = MarginalizationMode(self.mode)
            self.sampler = SamplerType(self.sampler)
            self.score = ScoreType(self.score)
        except ValueError as e:
            raise ConfigurationError(str(e))

    def validate(self, rows: int, cols: int):
        """Fail fast on settings that cannot work for a rows x cols grid."""
        if self.num_samples < 1:
            raise DomainError(f"num_samples must be >= 1, got {self.num_samples}")
        if self.window_size < 1:
            raise DomainError(f"window_size must be >= 1, got {self.window_size}")
        if self.patch_size < 0:
            raise DomainError(f"patch_size must be >= 0, got {self.patch_size}")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.num_workers < 1:
            raise ConfigurationError(
                f"num_workers must be >= 1, got {self.num_workers}"
            )
        if self.mode != MarginalizationMode.CHANNEL and (
            self.window_size > rows or self.window_size > cols
        ):
            raise ConfigurationError(
                f"window_size {self.window_size} exceeds grid of {rows} x {cols}"
            )
        if (
            self.sampler == SamplerType.CONDITIONAL
            and self.mode != MarginalizationMode.WINDOW
        ):
            raise ConfigurationError(
                "The conditional sampler is only available in window mode"
            )

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
        return result
