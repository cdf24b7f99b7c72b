"""
Attention configuration and factories.

Encoders pick one of three self-attention flavours by name:

    "abs_pos"        → MultiHeadAttention (no positional bias)
    "rel_pos"        → RelPositionMultiHeadAttention + RelPositionalEncoding
    "rel_pos_local"  → RelPositionMultiHeadLocalAttention + LocalAttRelPositionalEncoding

AttentionConfig validates the combination up front so a bad configuration
fails when it is created, not in the middle of a forward pass.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .attention import (
    MultiHeadAttention,
    RelPositionMultiHeadAttention,
    RelPositionMultiHeadLocalAttention,
)
from .embeddings import RelPositionalEncoding, LocalAttRelPositionalEncoding


ATTENTION_TYPES = ("abs_pos", "rel_pos", "rel_pos_local")


@dataclass
class AttentionConfig:
    """
    Hyperparameters of one self-attention layer.

    Attributes:
        d_model: Feature width (must be divisible by num_heads)
        num_heads: Number of attention heads
        bias: Whether the Q/K/V/output projections carry a bias term
        attention_type: One of "abs_pos", "rel_pos", "rel_pos_local"
        att_context_size: (left, right) context for "rel_pos_local"
        max_len: Initial table size for the "rel_pos" positional encoding
        xscale: Optional input scale applied by the positional encoding
    """
    d_model: int
    num_heads: int
    bias: bool = True
    attention_type: str = "rel_pos_local"
    att_context_size: Tuple[int, int] = (256, 256)
    max_len: int = 5000
    xscale: Optional[float] = None

    def __post_init__(self):
        if self.attention_type not in ATTENTION_TYPES:
            raise ValueError(
                f"Invalid attention_type: {self.attention_type}. Must be one of {', '.join(ATTENTION_TYPES)}."
            )
        if self.num_heads <= 0 or self.d_model % self.num_heads != 0:
            raise ValueError(f"d_model ({self.d_model}) must be divisible by num_heads ({self.num_heads})")

        self.att_context_size = tuple(self.att_context_size)
        if len(self.att_context_size) != 2:
            raise ValueError(f"att_context_size must be (left, right), got {self.att_context_size}")
        if self.attention_type == "rel_pos_local" and min(self.att_context_size) <= 0:
            raise ValueError(f"Context size for local attention must be > 0, got {self.att_context_size}")

    @property
    def d_k(self):
        return self.d_model // self.num_heads


def build_attention(config, pos_bias_u=None, pos_bias_v=None):
    """
    Create the attention module described by config.

    Args:
        config: AttentionConfig
        pos_bias_u: Optional pretrained (num_heads, d_k) bias, relative variants only
        pos_bias_v: Optional pretrained (num_heads, d_k) bias, relative variants only

    Returns:
        attention: nn.Module with the (query, key, value, pos_emb, mask, cache) call interface
    """
    if config.attention_type == "abs_pos":
        return MultiHeadAttention(config.d_model, config.num_heads, bias=config.bias)
    if config.attention_type == "rel_pos":
        return RelPositionMultiHeadAttention(
            config.d_model,
            config.num_heads,
            bias=config.bias,
            pos_bias_u=pos_bias_u,
            pos_bias_v=pos_bias_v,
        )
    return RelPositionMultiHeadLocalAttention(
        config.d_model,
        config.num_heads,
        bias=config.bias,
        pos_bias_u=pos_bias_u,
        pos_bias_v=pos_bias_v,
        att_context_size=config.att_context_size,
    )


def build_positional_encoding(config):
    """Positional encoding matching config.attention_type (None for "abs_pos")."""
    if config.attention_type == "rel_pos":
        return RelPositionalEncoding(config.d_model, max_len=config.max_len, xscale=config.xscale)
    if config.attention_type == "rel_pos_local":
        return LocalAttRelPositionalEncoding(
            config.d_model, att_context_size=config.att_context_size, xscale=config.xscale
        )
    return None
