"""Model-specific prediction adapters."""

from contextlib import nullcontext

import numpy as np
import torch

from . import keras_like, plain_callable, torch_module

# Registry of model adapters, checked in order.
# Each module should have: supports_model(model) and predict(model, batch)
MODEL_MODULES = [
    torch_module,
    keras_like,
    plain_callable,
]


def _find_module(model):
    for module in MODEL_MODULES:
        if module.supports_model(model):
            return module
    raise NotImplementedError(
        f"Relevance analysis not implemented for model type: {type(model).__name__}. "
        f"Add a new module in saliency/models/ with supports_model() and "
        f"predict() functions."
    )


def evaluation_context(model):
    """Context in which the model is evaluated for a whole run."""
    module = _find_module(model)
    if hasattr(module, "evaluation_mode"):
        return module.evaluation_mode(model)
    return nullcontext(model)


def predict_parameters(model, batch, channels_first=False):
    """
    Get distribution parameters for any supported model.

    Args:
        model: The trained model
        batch: Predictors of shape (B, rows, cols, channels)
        channels_first: Feed the model (B, channels, rows, cols) instead

    Returns:
        torch.Tensor: float64 parameters of shape (B, n_outputs)
    """
    module = _find_module(model)
    if channels_first:
        batch = np.ascontiguousarray(np.moveaxis(batch, -1, 1))
    output = module.predict(model, batch)
    return output.reshape(len(batch), -1).to(torch.float64)


__all__ = ["evaluation_context", "predict_parameters"]
