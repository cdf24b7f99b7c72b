"""
Check banded local attention against dense relative-position attention.

Local attention must give exactly the same answer as full relative-position
attention whose scores are masked to the same (left, right) window; the
banded kernels only change how much work is done, never the result. This
command builds both variants with shared weights and random pos_bias_u /
pos_bias_v, runs them on random input, and reports the largest difference.

Configurations cover:
    - symmetric and asymmetric windows
    - windows wider than the sequence (no windowing effect at all)
    - sequence lengths that are not a multiple of 2w (time padding)

Usage:
    python main.py verify
    python main.py verify --d-model 256 --num-heads 4 --left-context 64 --right-context 64
"""

import sys
from pathlib import Path

import torch
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.rel_attention.attention import RelPositionMultiHeadAttention, RelPositionMultiHeadLocalAttention
from src.rel_attention.banded import local_attention_mask
from src.rel_attention.device_utils import init_device
from src.rel_attention.embeddings import RelPositionalEncoding, LocalAttRelPositionalEncoding


def build_attention_pair(d_model, num_heads, att_context_size, device):
    """
    Create a dense and a local relative-position attention with identical
    projections and positional biases.
    """
    dense = RelPositionMultiHeadAttention(d_model, num_heads)
    local = RelPositionMultiHeadLocalAttention(d_model, num_heads, att_context_size=att_context_size)

    with torch.no_grad():
        dense.rel_pos.pos_bias_u.normal_(0.0, 0.02)
        dense.rel_pos.pos_bias_v.normal_(0.0, 0.02)
    local.load_state_dict(dense.state_dict())

    return dense.to(device).eval(), local.to(device).eval()


def compare_local_to_dense(dense, local, seq_len, batch_size=2, device=None):
    """
    Run both variants on the same random input.

    Returns:
        max_diff: Largest absolute difference between the two outputs
    """
    d_model = dense.d_model
    att_context_size = local.att_context_size

    x = torch.randn(batch_size, seq_len, d_model, device=device)
    _, rel_pos_emb = RelPositionalEncoding(d_model).to(device)(x)
    _, local_pos_emb = LocalAttRelPositionalEncoding(d_model, att_context_size).to(device)(x)

    window_mask = local_attention_mask(seq_len, seq_len, att_context_size, device=device)
    window_mask = window_mask.unsqueeze(0).expand(batch_size, -1, -1)

    with torch.no_grad():
        dense_out = dense(x, x, x, pos_emb=rel_pos_emb, mask=window_mask)
        local_out = local(x, x, x, pos_emb=local_pos_emb)

    return (dense_out - local_out).abs().max().item()


def verify(d_model=64, num_heads=4, att_context_size=None, device_type=None, seed=42, atol=1e-5):
    """
    Compare local and dense attention over a set of configurations.

    Args:
        d_model: Feature width
        num_heads: Number of heads
        att_context_size: Optional (left, right) to check in addition to the defaults
        device_type: "cuda", "mps", "cpu" or None for autodetect
        seed: Random seed
        atol: Largest acceptable absolute difference

    Returns:
        results: List of (seq_len, (left, right), max_diff, passed) tuples
    """
    device, _ = init_device(device_type, seed=seed)

    configs = [
        (5, (2, 2)),
        (16, (4, 4)),
        (17, (3, 5)),
        (17, (5, 3)),
        (12, (16, 16)),
        (9, (1, 1)),
    ]
    if att_context_size is not None:
        configs.append((4 * max(att_context_size) + 3, tuple(att_context_size)))

    results = []
    for seq_len, context in configs:
        dense, local = build_attention_pair(d_model, num_heads, context, device)
        max_diff = compare_local_to_dense(dense, local, seq_len, device=device)
        results.append((seq_len, context, max_diff, max_diff <= atol))

    return results


def main(args):
    """Entry point for `main.py verify`."""
    console = Console()

    console.print(Panel(
        "[bold blue]Local Attention Verification[/bold blue]\n"
        "Banded local attention vs dense relative-position attention with a window mask",
        style="bold blue",
        expand=False
    ))
    console.print()

    att_context_size = None
    if args.left_context is not None or args.right_context is not None:
        left = args.left_context if args.left_context is not None else args.right_context
        right = args.right_context if args.right_context is not None else args.left_context
        att_context_size = (left, right)

    results = verify(
        d_model=args.d_model,
        num_heads=args.num_heads,
        att_context_size=att_context_size,
        device_type=args.device,
        seed=args.seed,
        atol=args.atol,
    )

    table = Table(title="Local vs Dense", show_header=True, header_style="bold cyan")
    table.add_column("Seq Length", justify="right", style="cyan")
    table.add_column("Context (L, R)", justify="right", style="white")
    table.add_column("Max |diff|", justify="right", style="yellow")
    table.add_column("Result", justify="center")

    for seq_len, context, max_diff, passed in results:
        status = "[bold green]PASS[/bold green]" if passed else "[bold red]FAIL[/bold red]"
        table.add_row(str(seq_len), f"({context[0]}, {context[1]})", f"{max_diff:.2e}", status)

    console.print(table)
    console.print()

    failures = [r for r in results if not r[3]]
    if failures:
        console.print(f"[bold red]{len(failures)} configuration(s) exceeded atol={args.atol}[/bold red]")
        return 1

    console.print(f"[bold green]All {len(results)} configurations match within atol={args.atol}[/bold green]")
    return 0
