"""Adapter for objects exposing a Keras-style ``predict(batch)`` method."""

import numpy as np
import torch


def supports_model(model) -> bool:
    return callable(getattr(model, "predict", None))


def predict(model, batch):
    output = model.predict(batch)
    # Multi-output models return one array per distribution parameter.
    if isinstance(output, (list, tuple)):
        output = np.concatenate(
            [np.asarray(o).reshape(len(batch), -1) for o in output], axis=-1
        )
    return torch.from_numpy(np.asarray(output, dtype=np.float64))
