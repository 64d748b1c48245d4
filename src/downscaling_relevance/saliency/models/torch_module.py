"""Adapter for torch.nn.Module and TorchScript models."""

from contextlib import contextmanager

import torch


def supports_model(model) -> bool:
    return isinstance(model, torch.nn.Module)


@contextmanager
def evaluation_mode(model):
    """Put the model in eval mode for the duration of a run."""
    was_training = model.training
    model.eval()
    try:
        yield model
    finally:
        model.train(was_training)


def _device_and_dtype(model):
    for param in model.parameters():
        return param.device, param.dtype
    return torch.device("cpu"), torch.float32


def predict(model, batch):
    device, dtype = _device_and_dtype(model)
    inputs = torch.as_tensor(batch, dtype=dtype, device=device)
    with torch.no_grad():
        output = model(inputs)
    if isinstance(output, (list, tuple)):
        output = torch.cat([o.reshape(len(inputs), -1) for o in output], dim=-1)
    return output.detach().cpu()
