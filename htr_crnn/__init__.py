"""
CRNN models for handwritten text recognition

Builds the network (convolutional blocks → bidirectional RNN → linear)
from command-line options or a YAML config and saves it, together with
its configuration, so that it can be trained with a CTC loss.

Usage:
    # Create a model
    htr-create-model 1 128 79 model.pt --cnn_batch_norm true

    # Load it back
    from htr_crnn import load_model
    model, config = load_model('model.pt')
"""

from .model import (
    CRNN,
    ConvBlock,
    ImageToSequence,
    count_parameters,
    create_crnn_model
)
from .arguments import args_to_config, build_parser, expand_list, expand_size, parse_args
from .utils import load_config, load_model, save_config, save_model

__all__ = [
    # Model
    'CRNN',
    'ConvBlock',
    'ImageToSequence',
    'count_parameters',
    'create_crnn_model',

    # Arguments
    'args_to_config',
    'build_parser',
    'expand_list',
    'expand_size',
    'parse_args',

    # Checkpoints
    'load_config',
    'load_model',
    'save_config',
    'save_model',
]
