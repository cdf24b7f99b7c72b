"""
Sinusoidal relative positional encodings.

Relative-position attention does not add position information to the input.
Instead it receives a separate sequence of positional embeddings, one per
*relative distance* between a query and a key, and scores every query against
them (the "content-position" term).

Ordering Convention:
--------------------
Embeddings are ordered from the furthest-left distance to the furthest-right:

    RelPositionalEncoding, T frames:
        index:     0      1     ...   T-1   ...   2T-2
        distance:  T-1    T-2   ...   0     ...   -(T-1)

    LocalAttRelPositionalEncoding, context (left, right):
        index:     0      ...   left   ...   left+right
        distance:  left   ...   0      ...   -right

Distance = query position - key position, so positive distances look into the
past (left context) and negative distances into the future (right context).
The dense variant converts this layout to per-key scores with the relative
shift; the local variant lines it up directly with its banded scores.

Encoding:
    pe[pos, 2i]   = sin(pos / 10000^(2i / d_model))
    pe[pos, 2i+1] = cos(pos / 10000^(2i / d_model))
"""

import math
from abc import ABC, abstractmethod

import torch
import torch.nn as nn


class PositionalEncoding(nn.Module, ABC):
    """
    Base class holding a table of sinusoidal embeddings.

    Subclasses decide which positions the table covers (extend_pe) and which
    slice of it a forward pass returns.
    """

    def __init__(self, d_model, max_len=5000, xscale=None):
        """
        Args:
            d_model: Embedding dimension
            max_len: Initial number of positions to precompute
            xscale: Optional factor the input is multiplied by (e.g. sqrt(d_model))
        """
        super().__init__()
        self.d_model = d_model
        self.max_len = max_len
        self.xscale = xscale

    def create_pe(self, positions, dtype):
        """Build the embedding table for a column of positions, shape (1, len, d_model)."""
        pos_length = positions.size(0)
        pe = torch.zeros(pos_length, self.d_model, device=positions.device)
        div_term = torch.exp(
            torch.arange(0, self.d_model, 2, dtype=torch.float32, device=positions.device)
            * -(math.log(10000.0) / self.d_model)
        )
        pe[:, 0::2] = torch.sin(positions * div_term)
        pe[:, 1::2] = torch.cos(positions * div_term)
        pe = pe.unsqueeze(0).to(dtype)
        if hasattr(self, 'pe'):
            self.pe = pe
        else:
            self.register_buffer('pe', pe, persistent=False)

    @abstractmethod
    def extend_pe(self, length, device, dtype):
        """Make sure self.pe covers the positions a forward pass needs."""

    def _scale(self, x):
        if self.xscale:
            x = x * self.xscale
        return x


class RelPositionalEncoding(PositionalEncoding):
    """
    Relative positional encoding for full (non-windowed) attention.

    For an input of T frames (including cached history) this returns 2T - 1
    embeddings covering distances T-1 down to -(T-1), which is exactly what
    the relative shift in RelPositionMultiHeadAttention expects.
    """

    def __init__(self, d_model, max_len=5000, xscale=None):
        super().__init__(d_model, max_len=max_len, xscale=xscale)
        self.extend_pe(max_len, device=torch.device('cpu'), dtype=torch.float32)

    def extend_pe(self, length, device, dtype):
        """Make sure the table covers distances length-1 ... -(length-1)."""
        needed_size = 2 * length - 1
        if hasattr(self, 'pe') and self.pe.size(1) >= needed_size:
            return
        positions = torch.arange(length - 1, -length, -1, dtype=torch.float32, device=device).unsqueeze(1)
        self.create_pe(positions=positions, dtype=dtype)

    def forward(self, x, cache_len=0):
        """
        Args:
            x: Input of shape (batch, time, d_model)
            cache_len: Number of history frames the keys will be extended with

        Returns:
            x: Input, scaled by xscale if configured
            pos_emb: Embeddings of shape (1, 2 * (time + cache_len) - 1, d_model)
        """
        input_len = x.size(1) + cache_len
        self.extend_pe(input_len, device=x.device, dtype=x.dtype)

        # The table is symmetric around distance 0, which sits at the center
        center_pos = self.pe.size(1) // 2 + 1
        start_pos = center_pos - input_len
        end_pos = center_pos + input_len - 1
        pos_emb = self.pe[:, start_pos:end_pos].to(device=x.device, dtype=x.dtype)
        return self._scale(x), pos_emb


class LocalAttRelPositionalEncoding(PositionalEncoding):
    """
    Relative positional encoding for sliding window attention.

    The window never changes, so the table is built once and always covers
    distances left ... -right (left + right + 1 embeddings), independent of
    the input length.
    """

    def __init__(self, d_model, att_context_size, xscale=None):
        """
        Args:
            d_model: Embedding dimension
            att_context_size: (left, right) attention context
            xscale: Optional input scale
        """
        left, right = att_context_size
        super().__init__(d_model, max_len=left + right + 1, xscale=xscale)
        self.left_context = left
        self.right_context = right
        self.extend_pe(self.max_len, device=torch.device('cpu'), dtype=torch.float32)

    def extend_pe(self, length, device, dtype):
        """Build the table once; the window size fixes its length."""
        if hasattr(self, 'pe'):
            return
        positions = torch.arange(
            self.left_context, -self.right_context - 1, -1, dtype=torch.float32, device=device
        ).unsqueeze(1)
        self.create_pe(positions=positions, dtype=dtype)

    def forward(self, x, cache_len=0):
        """
        Args:
            x: Input of shape (batch, time, d_model)
            cache_len: Unused; the window does not grow with history

        Returns:
            x: Input, scaled by xscale if configured
            pos_emb: Embeddings of shape (1, left + right + 1, d_model)
        """
        end_pos = self.left_context + self.right_context + 1
        pos_emb = self.pe[:, :end_pos].to(device=x.device, dtype=x.dtype)
        return self._scale(x), pos_emb
