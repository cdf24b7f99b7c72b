"""
Benchmark local (banded) attention against dense relative-position attention.

Dense relative-position attention builds a (seq, seq) score matrix per head,
so time and memory grow as O(n²). Local attention keeps only the 2w + 1
window columns per query, so both grow as O(n · w).

Expected Results:
-----------------
- Short sequences (seq <= 2w): dense is as fast or faster (the band covers
  everything and the kernels loop over 2w + 1 offsets)
- Long sequences (seq >> w): local pulls ahead, and the gap widens linearly
  with sequence length

Usage:
    python main.py benchmark
    python main.py benchmark --device cuda --left-context 128 --right-context 128
"""

import sys
import time
from pathlib import Path

import torch
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.rel_attention.attention import RelPositionMultiHeadAttention, RelPositionMultiHeadLocalAttention
from src.rel_attention.device_utils import (
    init_device,
    get_synchronize_fn,
    get_memory_stats_fn,
    reset_memory_stats,
)
from src.rel_attention.embeddings import RelPositionalEncoding, LocalAttRelPositionalEncoding


def time_attention(attention, x, pos_emb, device, num_runs=3):
    """
    Time one attention module.

    Args:
        attention: Attention module
        x: Input of shape (batch, seq, d_model), used as query, key and value
        pos_emb: Positional embeddings for this module
        device: torch.device the inputs live on
        num_runs: Number of timed runs to average

    Returns:
        avg_time: Average wall time in seconds
        peak_memory: Peak allocated bytes during the runs (0 where not tracked)
    """
    synchronize = get_synchronize_fn(device.type)
    get_memory = get_memory_stats_fn(device.type)

    with torch.no_grad():
        # Warm-up run (not counted)
        attention(x, x, x, pos_emb=pos_emb)
        synchronize()

        reset_memory_stats(device.type)
        times = []
        for _ in range(num_runs):
            start_time = time.time()
            attention(x, x, x, pos_emb=pos_emb)
            synchronize()
            times.append(time.time() - start_time)

    return sum(times) / len(times), get_memory()


def benchmark(d_model=256, num_heads=4, att_context_size=(64, 64), sequence_lengths=None,
              batch_size=1, device_type=None, seed=42, num_runs=3):
    """
    Time dense and local attention for each sequence length.

    Returns:
        results: List of dicts with seq_len, dense_time, local_time, dense_memory, local_memory
    """
    device, _ = init_device(device_type, seed=seed)
    if sequence_lengths is None:
        sequence_lengths = [256, 512, 1024, 2048, 4096]

    dense = RelPositionMultiHeadAttention(d_model, num_heads).to(device).eval()
    local = RelPositionMultiHeadLocalAttention(
        d_model, num_heads, att_context_size=att_context_size
    ).to(device).eval()
    local.load_state_dict(dense.state_dict())

    rel_encoding = RelPositionalEncoding(d_model).to(device)
    local_encoding = LocalAttRelPositionalEncoding(d_model, att_context_size).to(device)

    results = []
    for seq_len in sequence_lengths:
        x = torch.randn(batch_size, seq_len, d_model, device=device)
        _, rel_pos_emb = rel_encoding(x)
        _, local_pos_emb = local_encoding(x)

        dense_time, dense_memory = time_attention(dense, x, rel_pos_emb, device, num_runs=num_runs)
        local_time, local_memory = time_attention(local, x, local_pos_emb, device, num_runs=num_runs)

        results.append({
            'seq_len': seq_len,
            'dense_time': dense_time,
            'local_time': local_time,
            'dense_memory': dense_memory,
            'local_memory': local_memory,
        })

    return results


def main(args):
    """Entry point for `main.py benchmark`."""
    console = Console()

    att_context_size = (args.left_context or 64, args.right_context or args.left_context or 64)

    console.print(Panel(
        "[bold blue]Local Attention Benchmark[/bold blue]\n"
        "Banded local attention vs dense relative-position attention",
        style="bold blue",
        expand=False
    ))
    console.print()

    console.print("[bold]Configuration:[/bold]")
    console.print(f"  d_model: {args.d_model}")
    console.print(f"  num_heads: {args.num_heads}")
    console.print(f"  att_context_size: {att_context_size}")
    console.print()

    console.print("[bold]Running benchmarks...[/bold]")
    results = benchmark(
        d_model=args.d_model,
        num_heads=args.num_heads,
        att_context_size=att_context_size,
        sequence_lengths=args.seq_lengths,
        device_type=args.device,
        seed=args.seed,
        num_runs=args.num_runs,
    )

    results_table = Table(title="Attention Speed Comparison", show_header=True, header_style="bold cyan")
    results_table.add_column("Seq Length", justify="right", style="cyan")
    results_table.add_column("Dense", justify="right", style="red")
    results_table.add_column("Local", justify="right", style="green")
    results_table.add_column("Speedup", justify="right", style="bold yellow")
    results_table.add_column("Peak Memory (dense / local)", justify="right", style="white")

    for row in results:
        speedup = row['dense_time'] / row['local_time'] if row['local_time'] > 0 else 0
        memory = "n/a"
        if row['dense_memory'] or row['local_memory']:
            memory = f"{row['dense_memory'] / 2**20:.1f} MB / {row['local_memory'] / 2**20:.1f} MB"
        results_table.add_row(
            str(row['seq_len']),
            f"{row['dense_time'] * 1000:.2f} ms",
            f"{row['local_time'] * 1000:.2f} ms",
            f"[bold]{speedup:.1f}x[/bold]",
            memory,
        )

    console.print()
    console.print(results_table)
    console.print()
    return 0
