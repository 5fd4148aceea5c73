"""
Utility functions for configuration files and model checkpoints.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import torch
import yaml

from .model import CRNN, count_parameters, create_crnn_model


MODEL_TYPE = 'crnn'


def load_config(config_path) -> Optional[dict]:
    """Read a YAML file of options or a stored model configuration."""
    return yaml.safe_load(Path(config_path).read_text(encoding='utf-8'))


def save_config(config: dict, save_path):
    Path(save_path).write_text(
        yaml.safe_dump(config, default_flow_style=False, sort_keys=False),
        encoding='utf-8'
    )


def save_model(model: CRNN, config: dict, save_path):
    """
    Save a freshly created model together with the configuration
    needed to rebuild it.
    """
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, 'wb') as f:
        torch.save({
            'model_state_dict': model.state_dict(),
            'config': config,
            'model_type': MODEL_TYPE,
            'num_parameters': count_parameters(model),
            'timestamp': datetime.now().isoformat()
        }, f)


def load_model(checkpoint_path, device: Optional[str] = None) -> Tuple[CRNN, dict]:
    """
    Load a model saved with save_model.

    Args:
        checkpoint_path: Path to the checkpoint file
        device: Device to map the weights to (default: cpu)

    Returns:
        model: The rebuilt CRNN with its weights loaded
        config: The configuration stored in the checkpoint
    """
    checkpoint = torch.load(checkpoint_path, map_location=device or 'cpu', weights_only=True)

    model_type = checkpoint.get('model_type')
    if model_type != MODEL_TYPE:
        raise ValueError(
            f"{checkpoint_path} is not a {MODEL_TYPE} checkpoint (model type: {model_type})"
        )

    config = checkpoint['config']
    model = create_crnn_model(config)
    model.load_state_dict(checkpoint['model_state_dict'])
    if device is not None:
        model = model.to(device)

    return model, config
