"""
Tests for option parsing, validation and per-layer list expansion.
"""

import argparse

import pytest
import yaml

from htr_crnn.arguments import (
    ArgumentError,
    NumberInClosedRange,
    NumberInOpenRange,
    SizeType,
    args_to_config,
    expand_list,
    expand_size,
    parse_args,
    size_type,
    str2bool,
)

POSITIONALS = ['1', '64', '10', 'model.pt']


@pytest.mark.parametrize('text, expected', [
    ('3', (3,)),
    ('2,4', (2, 4)),
    ('(2, 4)', (2, 4)),
    ('[2,4]', (2, 4)),
    ('2x4', (2, 4)),
])
def test_size_type(text, expected):
    assert size_type(text) == expected


@pytest.mark.parametrize('text', ['', 'a', '1,2,3', '0', '-1', '2,', '(3', '3]', '[2,4)', '(2,4]', '()'])
def test_size_type_rejects_invalid(text):
    with pytest.raises(argparse.ArgumentTypeError):
        size_type(text)


def test_size_type_allows_zero_when_requested():
    assert SizeType(vmin=0)('0') == (0,)
    assert SizeType(vmin=0)('2,0') == (2, 0)


@pytest.mark.parametrize('text, expected', [
    ('true', True), ('True', True), ('yes', True), ('1', True), ('t', True),
    ('false', False), ('NO', False), ('0', False), ('f', False),
])
def test_str2bool(text, expected):
    assert str2bool(text) is expected


def test_str2bool_rejects_invalid():
    with pytest.raises(argparse.ArgumentTypeError):
        str2bool('maybe')


def test_number_in_closed_range():
    positive = NumberInClosedRange(int, vmin=1)
    assert positive('5') == 5
    assert positive('1') == 1
    with pytest.raises(argparse.ArgumentTypeError):
        positive('0')
    with pytest.raises(argparse.ArgumentTypeError):
        positive('1.5')

    prob = NumberInClosedRange(float, vmin=0, vmax=1)
    assert prob('1') == 1.0
    with pytest.raises(argparse.ArgumentTypeError):
        prob('1.01')


def test_number_in_open_range():
    dropout = NumberInOpenRange(float, vmin=0, vmax=1, open_min=False)
    assert dropout('0') == 0.0
    assert dropout('0.5') == 0.5
    with pytest.raises(argparse.ArgumentTypeError):
        dropout('1')
    with pytest.raises(argparse.ArgumentTypeError):
        dropout('-0.1')

    with pytest.raises(argparse.ArgumentTypeError):
        NumberInOpenRange(float, vmin=0)('0')


def test_expand_list_repeats_last_element():
    assert expand_list([1, 2], 4) == [1, 2, 2, 2]
    assert expand_list([1, 2], 2) == [1, 2]
    assert expand_list(['relu'], 3) == ['relu', 'relu', 'relu']


def test_expand_list_does_not_modify_input():
    values = [1]
    expand_list(values, 3)
    assert values == [1]


def test_expand_list_errors():
    with pytest.raises(ArgumentError):
        expand_list([1, 2, 3], 2)
    with pytest.raises(ArgumentError):
        expand_list([], 2)


def test_expand_size():
    assert expand_size(3) == (3, 3)
    assert expand_size((3,)) == (3, 3)
    assert expand_size((2, 4)) == (2, 4)
    assert expand_size([2, 4]) == (2, 4)
    with pytest.raises(ArgumentError):
        expand_size((1, 2, 3))


def test_parse_args_defaults():
    args = parse_args(POSITIONALS)

    assert args.num_input_channels == 1
    assert args.input_height == 64
    assert args.output_size == 10
    assert args.cnn_num_features == [16, 16, 32, 32]
    assert args.cnn_kernel_size == [(3, 3)] * 4
    assert args.cnn_stride == [(1, 1)] * 4
    assert args.cnn_dilation == [(1, 1)] * 4
    assert args.cnn_maxpool_size == [(2, 2)] * 4
    assert args.cnn_batch_norm == [False] * 4
    assert args.cnn_dropout == [0.0] * 4
    assert args.cnn_type == ['leakyrelu'] * 4
    assert args.rnn_type == 'blstm'
    assert args.rnn_num_layers == 3
    assert args.rnn_num_units == 256
    assert args.seed == 0x12345
    assert args.adaptive_pooling is None


def test_parse_args_expands_ragged_lists():
    args = parse_args(POSITIONALS + [
        '--cnn_num_features', '8', '16', '32',
        '--cnn_kernel_size', '3', '(2, 4)',
        '--cnn_maxpool_size', '2,2', '0',
        '--cnn_batch_norm', 'true', 'false',
        '--cnn_type', 'relu', 'tanh', 'prelu',
        '--cnn_dropout', '0.1',
    ])

    assert args.cnn_num_features == [8, 16, 32]
    assert args.cnn_kernel_size == [(3, 3), (2, 4), (2, 4)]
    assert args.cnn_maxpool_size == [(2, 2), (0, 0), (0, 0)]
    assert args.cnn_batch_norm == [True, False, False]
    assert args.cnn_type == ['relu', 'tanh', 'prelu']
    assert args.cnn_dropout == [0.1, 0.1, 0.1]


def test_parse_args_too_many_values(capsys):
    with pytest.raises(SystemExit) as e:
        parse_args(POSITIONALS + ['--cnn_num_features', '8', '16',
                                  '--cnn_kernel_size', '3', '3', '3'])
    assert e.value.code == 2
    assert '--cnn_kernel_size' in capsys.readouterr().err


@pytest.mark.parametrize('argv', [
    ['0', '64', '10', 'model.pt'],
    ['1', '-1', '10', 'model.pt'],
    ['1', '64', '0', 'model.pt'],
    POSITIONALS + ['--cnn_num_features', '0'],
    POSITIONALS + ['--cnn_kernel_size', '0'],
    POSITIONALS + ['--cnn_type', 'swish'],
    POSITIONALS + ['--cnn_dropout', '1.0'],
    POSITIONALS + ['--rnn_type', 'lstm'],
    POSITIONALS + ['--rnn_num_layers', '0'],
    POSITIONALS + ['--linear_dropout', '-0.5'],
    POSITIONALS + ['--adaptive_pooling', 'avgpool-0'],
    POSITIONALS + ['--adaptive_pooling', 'minpool-4'],
])
def test_parse_args_invalid_values(argv):
    with pytest.raises(SystemExit) as e:
        parse_args(argv)
    assert e.value.code == 2


def test_parse_args_input_height_too_small(capsys):
    # 8 -> 4 -> 2 -> 1 -> 0 with the default 2x2 pooling
    with pytest.raises(SystemExit) as e:
        parse_args(['1', '8', '10', 'model.pt'])
    assert e.value.code == 2
    assert 'convolutional layer 4' in capsys.readouterr().err


def test_parse_args_input_height_ignores_disabled_pooling():
    args = parse_args(['1', '8', '10', 'model.pt', '--cnn_maxpool_size', '2', '2', '2', '0'])
    assert args.cnn_maxpool_size[-1] == (0, 0)


def test_parse_args_variable_height_requires_adaptive_pooling():
    with pytest.raises(SystemExit):
        parse_args(['1', '0', '10', 'model.pt'])

    args = parse_args(['1', '0', '10', 'model.pt', '--adaptive_pooling', 'avgpool-4'])
    assert args.input_height == 0
    assert args.adaptive_pooling == 'avgpool-4'


def test_parse_args_config_file(tmp_path):
    config_path = tmp_path / 'model.yaml'
    config_path.write_text(
        'cnn_num_features: [8, 16]\n'
        'cnn_maxpool_size: [[2, 2], 0]\n'
        'cnn_batch_norm: true\n'
        'rnn-num-units: 32\n'
        'adaptive_pooling: null\n'
        'quiet: true\n'
    )

    args = parse_args(POSITIONALS + ['--config', str(config_path)])

    assert args.cnn_num_features == [8, 16]
    assert args.cnn_maxpool_size == [(2, 2), (0, 0)]
    assert args.cnn_batch_norm == [True, True]
    assert args.rnn_num_units == 32
    assert args.adaptive_pooling is None
    assert args.quiet is True


def test_parse_args_command_line_overrides_config_file(tmp_path):
    config_path = tmp_path / 'model.yaml'
    config_path.write_text('rnn_num_units: 32\ncnn_num_features: [8]\n')

    args = parse_args(POSITIONALS + ['-c', str(config_path), '--rnn_num_units', '64'])

    assert args.rnn_num_units == 64
    assert args.cnn_num_features == [8]


@pytest.mark.parametrize('content', [
    'rnn_units: 32\n',
    'rnn_type: lstm\n',
    'cnn_kernel_size: [[1, 2, 3]]\n',
    '- 1\n- 2\n',
    'rnn_num_units: [32\n',
])
def test_parse_args_invalid_config_file(tmp_path, content):
    config_path = tmp_path / 'model.yaml'
    config_path.write_text(content)

    with pytest.raises(SystemExit) as e:
        parse_args(POSITIONALS + ['--config', str(config_path)])
    assert e.value.code == 2


def test_parse_args_missing_config_file(tmp_path):
    with pytest.raises(SystemExit) as e:
        parse_args(POSITIONALS + ['--config', str(tmp_path / 'missing.yaml')])
    assert e.value.code == 2


def test_args_to_config():
    args = parse_args(POSITIONALS + ['--cnn_num_features', '8', '16',
                                     '--cnn_kernel_size', '3', '2,4'])
    config = args_to_config(args)

    assert config['input'] == {'num_channels': 1, 'height': 64}
    assert config['model']['num_symbols'] == 10
    assert config['model']['num_outputs'] == 11
    assert config['model']['cnn']['kernel_size'] == [[3, 3], [2, 4]]
    assert config['model']['rnn']['type'] == 'blstm'
    assert config['seed'] == 0x12345

    # Must be storable as plain YAML
    assert yaml.safe_load(yaml.safe_dump(config)) == config
