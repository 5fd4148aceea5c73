"""
Command-line arguments for model creation.

Per-layer options (--cnn_*) take one value per convolutional layer. The
number of layers is given by --cnn_num_features; shorter lists are extended
by repeating their last value.

Sizes (kernel, stride, dilation, pooling) are given as "3", "2,4", "2x4" or
"(2, 4)" and always mean (height, width). A single number is used for both
dimensions.

Option defaults can also be read from a YAML file with --config:

    cnn_num_features: [16, 32, 48, 64]
    cnn_maxpool_size: ["2,2", "2,2", "2,1", 0]
    cnn_batch_norm: true
    rnn_num_units: 256
"""

import argparse
import re
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import yaml

from .model import ACTIVATIONS, RNN_TYPES, block_output_size, parse_adaptive_pooling
from .utils import load_config


DEFAULT_SEED = 0x12345

PER_LAYER_OPTIONS = [
    'cnn_kernel_size',
    'cnn_stride',
    'cnn_dilation',
    'cnn_maxpool_size',
    'cnn_batch_norm',
    'cnn_dropout',
    'cnn_type',
]

SIZE_OPTIONS = {
    'cnn_kernel_size',
    'cnn_stride',
    'cnn_dilation',
    'cnn_maxpool_size',
}


class ArgumentError(ValueError):
    """Invalid combination of option values."""


class NumberInClosedRange:
    """Argparse type: a number in [vmin, vmax]. Either bound may be None."""

    def __init__(self, type=int, vmin=None, vmax=None):
        self.type = type
        self.vmin = vmin
        self.vmax = vmax

    def _below(self, value):
        return self.vmin is not None and value < self.vmin

    def _above(self, value):
        return self.vmax is not None and value > self.vmax

    def _interval(self):
        lo = '-inf' if self.vmin is None else self.vmin
        hi = 'inf' if self.vmax is None else self.vmax
        return f"[{lo}, {hi}]"

    def __call__(self, text):
        try:
            value = self.type(text)
        except (TypeError, ValueError):
            raise argparse.ArgumentTypeError(
                f"invalid {self.type.__name__} value: {text!r}"
            )
        if self._below(value) or self._above(value):
            raise argparse.ArgumentTypeError(
                f"value {value} is not in the range {self._interval()}"
            )
        return value

    def __repr__(self):
        return f"{self.type.__name__} in {self._interval()}"


class NumberInOpenRange(NumberInClosedRange):
    """Argparse type: a number in (vmin, vmax), each end optionally closed."""

    def __init__(self, type=int, vmin=None, vmax=None, open_min=True, open_max=True):
        super().__init__(type, vmin, vmax)
        self.open_min = open_min
        self.open_max = open_max

    def _below(self, value):
        if self.vmin is None:
            return False
        return value <= self.vmin if self.open_min else value < self.vmin

    def _above(self, value):
        if self.vmax is None:
            return False
        return value >= self.vmax if self.open_max else value > self.vmax

    def _interval(self):
        lo = '-inf' if self.vmin is None else self.vmin
        hi = 'inf' if self.vmax is None else self.vmax
        return f"{'(' if self.open_min else '['}{lo}, {hi}{')' if self.open_max else ']'}"


class SizeType:
    """Argparse type: a size of 1 or 2 integers, each >= vmin."""

    _RE = re.compile(r'^\s*(\d+)\s*(?:[,x]\s*(\d+)\s*)?$')
    _BRACKETS = ('()', '[]')

    def __init__(self, vmin=1):
        self.vmin = vmin

    def __call__(self, text) -> Tuple[int, ...]:
        inner = str(text).strip()
        if inner[:1] + inner[-1:] in self._BRACKETS:
            inner = inner[1:-1]
        match = self._RE.match(inner)
        if match is None:
            raise argparse.ArgumentTypeError(
                f"invalid size {text!r}, expected N or H,W"
            )
        size = tuple(int(g) for g in match.groups() if g is not None)
        if any(v < self.vmin for v in size):
            raise argparse.ArgumentTypeError(
                f"invalid size {text!r}, values must be >= {self.vmin}"
            )
        return size

    def __repr__(self):
        return 'size'


size_type = SizeType(vmin=1)


def str2bool(text) -> bool:
    value = str(text).strip().lower()
    if value in ('true', 't', 'yes', 'y', '1'):
        return True
    if value in ('false', 'f', 'no', 'n', '0'):
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {text!r}")


def adaptive_pooling_type(text) -> str:
    try:
        parse_adaptive_pooling(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return text


def expand_list(values: Sequence, n: int, name: str = 'list') -> List:
    """
    Extend values to n elements by repeating its last element.

    Raises:
        ArgumentError: if values is empty or has more than n elements
    """
    if len(values) == 0:
        raise ArgumentError(f"{name}: at least one value is required")
    if len(values) > n:
        raise ArgumentError(
            f"{name}: got {len(values)} values, but there are only "
            f"{n} convolutional layers"
        )
    values = list(values)
    return values + [values[-1]] * (n - len(values))


def expand_size(size) -> Tuple[int, int]:
    """Normalize a size given as k, (k,) or (h, w) into (h, w)."""
    if isinstance(size, int):
        return size, size
    size = tuple(size)
    if len(size) == 1:
        return size[0], size[0]
    if len(size) == 2:
        return size
    raise ArgumentError(f"invalid size {size}, expected 1 or 2 dimensions")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Create a CRNN model for handwritten text recognition',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Positional
    parser.add_argument('num_input_channels', type=NumberInClosedRange(int, vmin=1),
                        help='Number of channels of the input images')
    parser.add_argument('input_height', type=NumberInClosedRange(int, vmin=0),
                        help='Height of the input images, 0 for variable height')
    parser.add_argument('output_size', type=NumberInClosedRange(int, vmin=1),
                        help='Number of output symbols, not counting the CTC blank')
    parser.add_argument('output_file', type=Path,
                        help='Output file for the created model')

    # Convolutional layers
    parser.add_argument('--cnn_num_features', type=NumberInClosedRange(int, vmin=1),
                        nargs='+', default=[16, 16, 32, 32],
                        help='Number of features of each convolutional layer')
    parser.add_argument('--cnn_kernel_size', type=SizeType(vmin=1), nargs='+', default=[3],
                        help='Kernel size of each convolution, e.g. 3 or 3,5')
    parser.add_argument('--cnn_stride', type=SizeType(vmin=1), nargs='+', default=[1],
                        help='Stride of each convolution')
    parser.add_argument('--cnn_dilation', type=SizeType(vmin=1), nargs='+', default=[1],
                        help='Dilation of each convolution')
    parser.add_argument('--cnn_maxpool_size', type=SizeType(vmin=0), nargs='+', default=[2],
                        help='Max pooling size after each convolution, 0 for no pooling')
    parser.add_argument('--cnn_batch_norm', type=str2bool, nargs='+', default=[False],
                        help='Whether to use batch normalization after each convolution')
    parser.add_argument('--cnn_dropout', nargs='+', default=[0.0],
                        type=NumberInOpenRange(float, vmin=0, vmax=1, open_min=False),
                        help='Dropout probability at the input of each convolution')
    parser.add_argument('--cnn_type', nargs='+', default=['leakyrelu'],
                        choices=sorted(ACTIVATIONS),
                        help='Activation function of each convolutional layer')

    # Recurrent layers
    parser.add_argument('--rnn_type', choices=sorted(RNN_TYPES), default='blstm',
                        help='Type of the recurrent layers')
    parser.add_argument('--rnn_num_layers', type=NumberInClosedRange(int, vmin=1), default=3,
                        help='Number of recurrent layers')
    parser.add_argument('--rnn_num_units', type=NumberInClosedRange(int, vmin=1), default=256,
                        help='Number of units in each direction of the recurrent layers')
    parser.add_argument('--rnn_dropout', default=0.5,
                        type=NumberInOpenRange(float, vmin=0, vmax=1, open_min=False),
                        help='Dropout probability at the input of the recurrent layers')

    # Output layer
    parser.add_argument('--linear_dropout', default=0.5,
                        type=NumberInOpenRange(float, vmin=0, vmax=1, open_min=False),
                        help='Dropout probability at the input of the linear layer')

    parser.add_argument('--adaptive_pooling', type=adaptive_pooling_type, default=None,
                        help='Pool the conv features to a fixed height before the '
                             'recurrent layers, e.g. avgpool-16 or maxpool-8')
    parser.add_argument('--seed', type=NumberInClosedRange(int, vmin=0), default=DEFAULT_SEED,
                        help='Random seed used to initialize the weights')
    parser.add_argument('--config', '-c', type=Path, default=None,
                        help='YAML file with default values for the options')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='Do not print the model summary')

    return parser


def _convert_config_value(action: argparse.Action, value: Any):
    """Convert a value read from YAML the way argparse would convert it."""
    if action.nargs == 0:
        return str2bool(value)
    if value is None:
        return None

    def convert(elem):
        if isinstance(elem, (list, tuple)):
            elem = ','.join(str(v) for v in elem)
        result = action.type(str(elem)) if action.type is not None else elem
        if action.choices is not None and result not in action.choices:
            raise argparse.ArgumentTypeError(
                f"invalid choice: {result!r} (choose from {', '.join(map(str, action.choices))})"
            )
        return result

    if action.nargs == '+':
        values = value if isinstance(value, list) else [value]
        return [convert(v) for v in values]
    return convert(value)


def _config_defaults(parser: argparse.ArgumentParser, config: dict, path) -> dict:
    actions = {
        action.dest: action
        for action in parser._actions
        if action.option_strings and action.dest not in ('help', 'config')
    }

    defaults = {}
    for key, value in config.items():
        dest = str(key).replace('-', '_')
        if dest not in actions:
            parser.error(f"unknown option {key!r} in config file {path}")
        try:
            defaults[dest] = _convert_config_value(actions[dest], value)
        except argparse.ArgumentTypeError as e:
            parser.error(f"{key} in config file {path}: {e}")
    return defaults


def _expand_and_validate(parser: argparse.ArgumentParser, args: argparse.Namespace):
    num_layers = len(args.cnn_num_features)

    try:
        for name in PER_LAYER_OPTIONS:
            values = expand_list(getattr(args, name), num_layers, name='--' + name)
            if name in SIZE_OPTIONS:
                values = [expand_size(v) for v in values]
            setattr(args, name, values)
    except ArgumentError as e:
        parser.error(str(e))

    if args.input_height == 0:
        if args.adaptive_pooling is None:
            parser.error('--adaptive_pooling is required for variable height images '
                         '(input_height 0)')
        return

    height = args.input_height
    for i in range(num_layers):
        height = block_output_size(
            height,
            args.cnn_kernel_size[i][0],
            args.cnn_stride[i][0],
            args.cnn_dilation[i][0],
            args.cnn_maxpool_size[i][0] if min(args.cnn_maxpool_size[i]) > 0 else 0
        )
        if height < 1:
            parser.error(
                f"input_height {args.input_height} is too small: the output of "
                f"convolutional layer {i + 1} would have height {height}"
            )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse the command line, apply defaults from --config and expand the
    per-layer options to one value per convolutional layer.
    """
    parser = build_parser()

    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument('--config', '-c', type=Path, default=None)
    known, _ = pre_parser.parse_known_args(argv)

    if known.config is not None:
        try:
            config = load_config(known.config)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            parser.error(f"cannot read config file {known.config}: {e}")
        if config is None:
            config = {}
        if not isinstance(config, dict):
            parser.error(f"config file {known.config} must contain a mapping of options")
        parser.set_defaults(**_config_defaults(parser, config, known.config))

    args = parser.parse_args(argv)
    _expand_and_validate(parser, args)
    return args


def args_to_config(args: argparse.Namespace) -> dict:
    """Configuration stored with the model, see create_crnn_model."""
    return {
        'input': {
            'num_channels': args.num_input_channels,
            'height': args.input_height,
        },
        'model': {
            'num_symbols': args.output_size,
            'num_outputs': args.output_size + 1,  # CTC blank
            'adaptive_pooling': args.adaptive_pooling,
            'cnn': {
                'num_features': list(args.cnn_num_features),
                'kernel_size': [list(k) for k in args.cnn_kernel_size],
                'stride': [list(s) for s in args.cnn_stride],
                'dilation': [list(d) for d in args.cnn_dilation],
                'maxpool_size': [list(p) for p in args.cnn_maxpool_size],
                'batch_norm': list(args.cnn_batch_norm),
                'dropout': list(args.cnn_dropout),
                'type': list(args.cnn_type),
            },
            'rnn': {
                'type': args.rnn_type,
                'num_layers': args.rnn_num_layers,
                'num_units': args.rnn_num_units,
                'dropout': args.rnn_dropout,
            },
            'linear': {
                'dropout': args.linear_dropout,
            },
        },
        'seed': args.seed,
    }
