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

import math
from enum import Enum

import torch
from torch import nn

from downscaling_relevance.errors import ConfigurationError

LOG_2PI = math.log(2.0 * math.pi)


class LossFunction(Enum):
    BERNOULLI_GAMMA = "bernoulli_gamma"
    GAUSSIAN = "gaussian"


class DistributionalLoss(nn.Module):
    """
    Negative log-likelihood of a per-location parametric distribution.

    The model output concatenates one block of ``n_points`` values per
    parameter, in the order of ``param_names``.
    """

    param_names: tuple[str, ...] = ()

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    def split(self, output: torch.Tensor, n_points: int) -> dict[str, torch.Tensor]:
        """Split raw model output (B, n_params * n_points) into natural parameters."""
        if output.ndim != 2 or output.shape[-1] != self.n_params * n_points:
            raise ConfigurationError(
                f"{type(self).__name__} expects {self.n_params} x {n_points} = "
                f"{self.n_params * n_points} outputs per sample, got shape "
                f"{tuple(output.shape)}"
            )
        blocks = output.split(n_points, dim=-1)
        return self._transform(dict(zip(self.param_names, blocks)))

    def _transform(self, blocks):
        return blocks

    def nll(self, observed, params, reduction="mean"):
        raise NotImplementedError

    def expectation(self, params) -> torch.Tensor:
        raise NotImplementedError

    def forward(self, output: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        params = self.split(output, target.shape[-1])
        return self.nll(target, params)


class BernoulliGammaLoss(DistributionalLoss):
    """
    Zero-inflated Gamma likelihood for daily precipitation.

    Output layout: ``[p | log shape | log scale]``. Dry days (``y == 0``)
    contribute ``-log(1 - p)``; wet days the Bernoulli term plus the Gamma
    log-density.
    """

    param_names = ("p", "shape", "scale")

    def __init__(self, eps: float = 1e-6):
        super().__init__()
        self.eps = eps

    def _transform(self, blocks):
        return {
            "p": blocks["p"].clamp(self.eps, 1.0 - self.eps),
            "shape": torch.exp(blocks["shape"]),
            "scale": torch.exp(blocks["scale"]),
        }

    def nll(self, observed, params, reduction="mean"):
        p = params["p"].clamp(self.eps, 1.0 - self.eps)
        shape = params["shape"].clamp_min(self.eps)
        scale = params["scale"].clamp_min(self.eps)
        observed = torch.as_tensor(observed, dtype=p.dtype, device=p.device)

        wet = observed > 0
        # Dry cells still go through the Gamma branch; keep log(y) finite there.
        safe_y = torch.where(wet, observed, torch.ones_like(observed))
        wet_nll = (
            -torch.log(p)
            - (shape - 1.0) * torch.log(safe_y)
            + safe_y / scale
            + shape * torch.log(scale)
            + torch.lgamma(shape)
        )
        dry_nll = -torch.log1p(-p)
        loss = torch.where(wet, wet_nll, dry_nll)
        return _reduce(loss, reduction)

    def expectation(self, params) -> torch.Tensor:
        return params["p"] * params["shape"] * params["scale"]


class GaussianLoss(DistributionalLoss):
    """Gaussian likelihood with output layout ``[mean | log scale]``."""

    param_names = ("mean", "log_scale")

    def __init__(self, min_log_scale: float = -20.0):
        super().__init__()
        self.min_log_scale = min_log_scale

    def nll(self, observed, params, reduction="mean"):
        mean = params["mean"]
        log_scale = params["log_scale"].clamp_min(self.min_log_scale)
        observed = torch.as_tensor(observed, dtype=mean.dtype, device=mean.device)
        z = (observed - mean) * torch.exp(-log_scale)
        loss = log_scale + 0.5 * LOG_2PI + 0.5 * z**2
        return _reduce(loss, reduction)

    def expectation(self, params) -> torch.Tensor:
        return params["mean"]


def _reduce(loss, reduction):
    if reduction == "mean":
        return loss.mean()
    if reduction == "sum":
        return loss.sum()
    if reduction == "none":
        return loss
    raise ValueError(f"Unknown reduction: {reduction}")


_LOSSES = {
    LossFunction.BERNOULLI_GAMMA: BernoulliGammaLoss,
    LossFunction.GAUSSIAN: GaussianLoss,
}


def build_loss(loss) -> DistributionalLoss:
    """Resolve a loss name, enum member or instance to a loss module."""
    if isinstance(loss, DistributionalLoss):
        return loss
    try:
        return _LOSSES[LossFunction(loss)]()
    except ValueError:
        raise ConfigurationError(
            f"Unknown loss function: {loss}. "
            f"Choose one of {[member.value for member in LossFunction]}"
        )
