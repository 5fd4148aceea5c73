"""
CRNN model for handwritten text recognition.

Architecture:
    Image → [ConvBlock] x N → ImageToSequence → BiRNN x L → Dropout → Linear

The output is a sequence of (unnormalized) scores over the symbols plus the
CTC blank, one frame per column of the last convolutional feature map.
"""

import re
from typing import List, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn
from torch.nn.modules.utils import _pair


Size = Union[int, Tuple[int, int]]

ACTIVATIONS = {
    'relu': nn.ReLU,
    'tanh': nn.Tanh,
    'sigmoid': nn.Sigmoid,
    'leakyrelu': nn.LeakyReLU,
    'prelu': nn.PReLU,
    'rrelu': nn.RReLU,
    'elu': nn.ELU,
    'softplus': nn.Softplus,
}

# All recurrent layers are bidirectional
RNN_TYPES = {
    'blstm': nn.LSTM,
    'bgru': nn.GRU,
    'brnn': nn.RNN,
}

_ADAPTIVE_POOLING_RE = re.compile(r'^(avg|max)pool-(\d+)$')


def parse_adaptive_pooling(text: str) -> Tuple[str, int]:
    """Split an adaptive pooling option like 'avgpool-16' into ('avg', 16)."""
    match = _ADAPTIVE_POOLING_RE.match(text)
    if match is None or int(match.group(2)) < 1:
        raise ValueError(
            f"invalid adaptive pooling {text!r}, expected avgpool-H or maxpool-H with H >= 1"
        )
    return match.group(1), int(match.group(2))


def conv_output_size(size, kernel: int, stride: int = 1, dilation: int = 1, padding: int = 0):
    """Output size of a convolution along one dimension (ints or tensors)."""
    return (size + 2 * padding - dilation * (kernel - 1) - 1) // stride + 1


def pool_output_size(size, pool: int):
    """Output size of a max pooling with stride equal to its kernel."""
    if pool <= 0:
        return size
    return size // pool


def same_padding(kernel: int, dilation: int = 1) -> int:
    return dilation * (kernel - 1) // 2


def block_output_size(size, kernel: int, stride: int, dilation: int, pool: int):
    """Output size along one dimension of a ConvBlock."""
    size = conv_output_size(size, kernel, stride, dilation, same_padding(kernel, dilation))
    return pool_output_size(size, pool)


class ConvBlock(nn.Module):
    """
    Dropout → Conv2d → BatchNorm → Activation → MaxPool

    Dropout, batch normalization and pooling are optional. Pooling is
    skipped when any of its dimensions is 0.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: Size = 3,
        stride: Size = 1,
        dilation: Size = 1,
        activation: str = 'leakyrelu',
        poolsize: Optional[Size] = None,
        dropout: float = 0.0,
        batchnorm: bool = False
    ):
        super().__init__()

        if activation not in ACTIVATIONS:
            raise ValueError(f"unknown activation {activation!r}")

        self.kernel_size = _pair(kernel_size)
        self.stride = _pair(stride)
        self.dilation = _pair(dilation)
        self.poolsize = _pair(poolsize) if poolsize else (0, 0)
        if min(self.poolsize) <= 0:
            self.poolsize = (0, 0)

        self.dropout = nn.Dropout(dropout) if dropout > 0 else None
        self.conv = nn.Conv2d(
            in_channels,
            out_channels,
            kernel_size=self.kernel_size,
            stride=self.stride,
            dilation=self.dilation,
            padding=tuple(same_padding(k, d) for k, d in zip(self.kernel_size, self.dilation)),
            # BatchNorm already has a bias term
            bias=not batchnorm
        )
        self.batchnorm = nn.BatchNorm2d(out_channels) if batchnorm else None
        self.activation = ACTIVATIONS[activation]()
        self.pool = nn.MaxPool2d(self.poolsize) if self.poolsize[0] > 0 else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.dropout is not None:
            x = self.dropout(x)
        x = self.conv(x)
        if self.batchnorm is not None:
            x = self.batchnorm(x)
        x = self.activation(x)
        if self.pool is not None:
            x = self.pool(x)
        return x

    def _output_size(self, size, dim: int):
        return block_output_size(
            size,
            self.kernel_size[dim],
            self.stride[dim],
            self.dilation[dim],
            self.poolsize[dim]
        )

    def output_height(self, height):
        return self._output_size(height, 0)

    def output_width(self, width):
        return self._output_size(width, 1)


class ImageToSequence(nn.Module):
    """
    Convert a feature map (N, C, H, W) into a sequence (W, N, C * H),
    one frame per column.

    With adaptive pooling ('avgpool-H' or 'maxpool-H') the height is first
    reduced to H, so that images of any height give the same frame size.
    """

    def __init__(self, pooling: Optional[str] = None):
        super().__init__()
        self.pooling = pooling

        if pooling is None:
            self.pool = None
            self.height = None
        else:
            mode, self.height = parse_adaptive_pooling(pooling)
            if mode == 'avg':
                self.pool = nn.AdaptiveAvgPool2d((self.height, None))
            else:
                self.pool = nn.AdaptiveMaxPool2d((self.height, None))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.pool is not None:
            x = self.pool(x)
        n, c, h, w = x.size()
        return x.permute(3, 0, 1, 2).contiguous().view(w, n, c * h)


class CRNN(nn.Module):
    """
    Convolutional recurrent network for HTR, trained with CTC.

    Args:
        num_input_channels: Channels of the input images
        num_outputs: Output symbols, including the CTC blank
        cnn_*: Per-layer options of the convolutional blocks, all with the
            same length (one element per block)
        rnn_type: 'blstm', 'bgru' or 'brnn'
        rnn_num_layers: Number of stacked bidirectional layers
        rnn_num_units: Hidden units per direction
        rnn_dropout: Dropout before the first and between recurrent layers
        linear_dropout: Dropout before the output projection
        input_height: Fixed height of the input images, or 0 for variable
            height (requires adaptive_pooling)
        adaptive_pooling: 'avgpool-H' or 'maxpool-H'
    """

    def __init__(
        self,
        num_input_channels: int,
        num_outputs: int,
        cnn_num_features: Sequence[int],
        cnn_kernel_size: Sequence[Size],
        cnn_stride: Sequence[Size],
        cnn_dilation: Sequence[Size],
        cnn_maxpool_size: Sequence[Size],
        cnn_batch_norm: Sequence[bool],
        cnn_dropout: Sequence[float],
        cnn_type: Sequence[str],
        rnn_type: str = 'blstm',
        rnn_num_layers: int = 3,
        rnn_num_units: int = 256,
        rnn_dropout: float = 0.5,
        linear_dropout: float = 0.5,
        input_height: int = 0,
        adaptive_pooling: Optional[str] = None
    ):
        super().__init__()

        num_layers = len(cnn_num_features)
        per_layer = [cnn_kernel_size, cnn_stride, cnn_dilation, cnn_maxpool_size,
                     cnn_batch_norm, cnn_dropout, cnn_type]
        if num_layers == 0 or any(len(values) != num_layers for values in per_layer):
            raise ValueError(
                "all convolutional options must have one value per layer "
                f"({num_layers} layers)"
            )
        if rnn_type not in RNN_TYPES:
            raise ValueError(f"unknown recurrent layer type {rnn_type!r}")
        if input_height <= 0 and adaptive_pooling is None:
            raise ValueError("variable height images require adaptive pooling")

        self.num_outputs = num_outputs
        self.input_height = input_height
        self.adaptive_pooling = adaptive_pooling

        # Convolutional blocks
        blocks = []
        in_channels = num_input_channels
        for i in range(num_layers):
            blocks.append(ConvBlock(
                in_channels,
                cnn_num_features[i],
                kernel_size=cnn_kernel_size[i],
                stride=cnn_stride[i],
                dilation=cnn_dilation[i],
                activation=cnn_type[i],
                poolsize=cnn_maxpool_size[i],
                dropout=cnn_dropout[i],
                batchnorm=cnn_batch_norm[i]
            ))
            in_channels = cnn_num_features[i]
        self.conv = nn.Sequential(*blocks)

        # Image to sequence
        self.sequencer = ImageToSequence(adaptive_pooling)
        if self.sequencer.height is not None:
            frame_height = self.sequencer.height
        else:
            frame_height = self.conv_output_height(input_height)
            if frame_height < 1:
                raise ValueError(
                    f"input height {input_height} is too small for the convolutional layers"
                )

        # Recurrent layers
        self.rnn_dropout = nn.Dropout(rnn_dropout)
        self.rnn = RNN_TYPES[rnn_type](
            input_size=cnn_num_features[-1] * frame_height,
            hidden_size=rnn_num_units,
            num_layers=rnn_num_layers,
            dropout=rnn_dropout if rnn_num_layers > 1 else 0,
            bidirectional=True
        )

        # Output projection (num_outputs includes the CTC blank)
        self.linear_dropout = nn.Dropout(linear_dropout)
        self.linear = nn.Linear(2 * rnn_num_units, num_outputs)

    def conv_output_height(self, height):
        for block in self.conv:
            height = block.output_height(height)
        return height

    def conv_output_width(self, width):
        for block in self.conv:
            width = block.output_width(width)
        return width

    def get_output_lengths(self, input_widths: torch.Tensor) -> torch.Tensor:
        """Calculate the number of output frames for images of the given widths."""
        return self.conv_output_width(input_widths)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: (batch, channels, height, width) images

        Returns:
            (frames, batch, num_outputs) scores
        """
        if self.adaptive_pooling is None and x.size(2) != self.input_height:
            raise ValueError(
                f"expected images of height {self.input_height}, got {x.size(2)}"
            )

        x = self.conv(x)
        x = self.sequencer(x)

        x = self.rnn_dropout(x)
        x, _ = self.rnn(x)

        x = self.linear_dropout(x)
        return self.linear(x)


def count_parameters(model: nn.Module) -> int:
    return sum(p.numel() for p in model.parameters())


def create_crnn_model(config: dict) -> CRNN:
    """
    Create CRNN model from config.

    Config structure:
        input:
            num_channels: 1
            height: 128
        model:
            num_outputs: 80
            adaptive_pooling: null
            cnn:
                num_features: [16, 16, 32, 32]
                kernel_size: [[3, 3], ...]
                stride: [[1, 1], ...]
                dilation: [[1, 1], ...]
                maxpool_size: [[2, 2], ...]
                batch_norm: [false, ...]
                dropout: [0.0, ...]
                type: [leakyrelu, ...]
            rnn:
                type: blstm
                num_layers: 3
                num_units: 256
                dropout: 0.5
            linear:
                dropout: 0.5
    """
    input_cfg = config.get('input', {})
    model_cfg = config['model']
    cnn_cfg = model_cfg['cnn']
    rnn_cfg = model_cfg.get('rnn', {})
    linear_cfg = model_cfg.get('linear', {})

    num_layers = len(cnn_cfg['num_features'])

    def per_layer(key, default) -> List:
        return list(cnn_cfg.get(key, [default] * num_layers))

    return CRNN(
        num_input_channels=input_cfg.get('num_channels', 1),
        num_outputs=model_cfg['num_outputs'],
        cnn_num_features=list(cnn_cfg['num_features']),
        cnn_kernel_size=per_layer('kernel_size', 3),
        cnn_stride=per_layer('stride', 1),
        cnn_dilation=per_layer('dilation', 1),
        cnn_maxpool_size=per_layer('maxpool_size', 0),
        cnn_batch_norm=per_layer('batch_norm', False),
        cnn_dropout=per_layer('dropout', 0.0),
        cnn_type=per_layer('type', 'leakyrelu'),
        rnn_type=rnn_cfg.get('type', 'blstm'),
        rnn_num_layers=rnn_cfg.get('num_layers', 3),
        rnn_num_units=rnn_cfg.get('num_units', 256),
        rnn_dropout=rnn_cfg.get('dropout', 0.5),
        linear_dropout=linear_cfg.get('dropout', 0.5),
        input_height=input_cfg.get('height', 0),
        adaptive_pooling=model_cfg.get('adaptive_pooling')
    )
