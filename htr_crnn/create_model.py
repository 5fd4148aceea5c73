#!/usr/bin/env python3
"""
Create a CRNN model for handwritten text recognition and save it,
together with its configuration, to a checkpoint file.

Usage:
    htr-create-model NUM_INPUT_CHANNELS INPUT_HEIGHT OUTPUT_SIZE OUTPUT_FILE [options]

    # IAM lines: 1 channel, 128px high, 79 symbols
    htr-create-model 1 128 79 model.pt \\
        --cnn_num_features 16 32 48 64 \\
        --cnn_batch_norm true --cnn_maxpool_size 2,2 2,2 2,2 0
"""

import sys
from typing import Optional, Sequence

import torch
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .arguments import args_to_config, parse_args
from .model import CRNN, count_parameters, create_crnn_model
from .utils import save_model

console = default_console = Console()


def _format_size(size) -> str:
    return f"{size[0]}x{size[1]}"


def create_header_panel(config: dict, num_params: int) -> Panel:
    """Create the header panel with the model info."""
    input_cfg = config['input']
    model_cfg = config['model']
    rnn_cfg = model_cfg['rnn']

    height = input_cfg['height'] or 'variable'

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_column(style="cyan")
    info_table.add_column(style="white")
    info_table.add_column(style="cyan")
    info_table.add_column(style="white")

    info_table.add_row(
        "Input:", f"{input_cfg['num_channels']} channel(s), height {height}",
        "Parameters:", f"{num_params:,}"
    )
    info_table.add_row(
        "Symbols:", f"{model_cfg['num_symbols']} (+1 blank)",
        "Seed:", str(config['seed'])
    )
    info_table.add_row(
        "RNN:", f"{rnn_cfg['num_layers']} x {rnn_cfg['type'].upper()} ({rnn_cfg['num_units']} units)",
        "Dropout:", f"rnn {rnn_cfg['dropout']}, linear {model_cfg['linear']['dropout']}"
    )

    return Panel(
        info_table,
        title="[bold white]HTR CRNN Model[/bold white]",
        border_style="blue",
        box=box.ROUNDED
    )


def create_layers_table(model: CRNN) -> Table:
    """Create the table of convolutional blocks."""
    table = Table(box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Layer", justify="right", style="dim")
    table.add_column("Features", justify="right")
    table.add_column("Kernel", justify="right")
    table.add_column("Stride", justify="right")
    table.add_column("Dilation", justify="right")
    table.add_column("Pool", justify="right")
    table.add_column("BN", justify="center")
    table.add_column("Dropout", justify="right")
    table.add_column("Activation")
    table.add_column("Output height", justify="right", style="dim")

    height = model.input_height
    for i, block in enumerate(model.conv):
        if height:
            height = block.output_height(height)
        table.add_row(
            str(i + 1),
            str(block.conv.out_channels),
            _format_size(block.kernel_size),
            _format_size(block.stride),
            _format_size(block.dilation),
            _format_size(block.poolsize) if block.pool is not None else "-",
            "✓" if block.batchnorm is not None else "",
            f"{block.dropout.p:.2f}" if block.dropout is not None else "-",
            type(block.activation).__name__,
            str(height) if height else "?"
        )

    return table


def run(args, console: Optional[Console] = None) -> CRNN:
    """Build the model described by the parsed arguments and save it."""
    if console is None:
        console = default_console
    torch.manual_seed(args.seed)

    config = args_to_config(args)
    with console.status("[bold blue]Creating model...", spinner="dots"):
        model = create_crnn_model(config)
        save_model(model, config, args.output_file)

    if not args.quiet:
        console.print(create_header_panel(config, count_parameters(model)))
        console.print(create_layers_table(model))
        console.print(f"[green]Model saved to {args.output_file}[/green]")

    return model


def main(argv: Optional[Sequence[str]] = None):
    args = parse_args(argv)
    try:
        run(args)
    except OSError as e:
        console.print(f"[red]Cannot write {args.output_file}: {e}[/red]")
        sys.exit(1)


if __name__ == '__main__':
    main()
