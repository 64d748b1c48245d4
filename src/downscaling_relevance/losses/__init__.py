"""Distributional losses for probabilistic downscaling networks."""

from .distributional import (
    BernoulliGammaLoss,
    DistributionalLoss,
    GaussianLoss,
    LossFunction,
    build_loss,
)

__all__ = [
    "BernoulliGammaLoss",
    "DistributionalLoss",
    "GaussianLoss",
    "LossFunction",
    "build_loss",
]
