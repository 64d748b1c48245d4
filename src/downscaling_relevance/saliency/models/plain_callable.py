"""Adapter for plain functions mapping a numpy batch to parameters."""

import numpy as np
import torch


def supports_model(model) -> bool:
    return callable(model)


def predict(model, batch):
    output = model(batch)
    if torch.is_tensor(output):
        return output.detach().cpu()
    return torch.from_numpy(np.asarray(output, dtype=np.float64))
