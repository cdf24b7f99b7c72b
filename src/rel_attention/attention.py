"""
Attention mechanisms for relative-position encoders.

Implements:
- Scaled dot-product attention (with optional additive bias)
- Multi-head attention (dense, no positional bias)
- Relative-position multi-head attention (Transformer-XL)
- Local (sliding window) relative-position multi-head attention

The three multi-head variants share their building blocks by composition:

    MultiHeadAttention                  = AttentionProjections + ScaledDotProductAttention
    RelPositionMultiHeadAttention       = AttentionProjections + RelPositionBias + ScaledDotProductAttention
    RelPositionMultiHeadLocalAttention  = AttentionProjections + RelPositionBias + banded kernels

All three are called the same way:

    output = attn(query, key, value, pos_emb=None, mask=None, cache=None)

Transformer-XL Score Decomposition:
-----------------------------------
With relative positions the score between query i and key j splits into a
content part and a position part (https://arxiv.org/abs/1901.02860, §3.3):

    score(i, j) = (q_i + u) · k_j          ← matrix AC (content-content)
                + (q_i + v) · p_{i-j}      ← matrix BD (content-position)

u and v are learned per-head biases (pos_bias_u, pos_bias_v) and p_{i-j} is
the projected embedding of the relative distance i - j.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

from .banded import banded_matmul_qk, banded_matmul_pv


class ScaledDotProductAttention(nn.Module):
    """
    Scaled dot-product attention mechanism.

    Computes attention weights and applies them to values using the formula:
        Attention(Q, K, V) = softmax(Q·Kᵀ / √d_k + bias) · V
    """

    def __init__(self):
        super().__init__()

    def forward(self, query, key, value, mask=None, debug=False, attn_bias=None):
        """
        Compute scaled dot-product attention with an optional additive bias.

        Args:
            query: Query tensor of shape (..., seq_q, d_k)
            key: Key tensor of shape (..., seq_k, d_k)
            value: Value tensor of shape (..., seq_k, d_v)
            mask: Optional boolean mask broadcastable to (..., seq_q, seq_k).
                  Positions with True are excluded (-inf before softmax, zero
                  weight after it).
            debug: If True, print diagnostic information for NaN detection
            attn_bias: Optional tensor added to the scaled scores before masking
                       (e.g. the content-position term of relative attention)

        Returns:
            output: Attention output of shape (..., seq_q, d_v)
            attention_weights: Attention weights of shape (..., seq_q, seq_k)
        """
        d_k = query.size(-1)

        # scores: (..., seq_q, seq_k)
        scores = torch.matmul(query, key.transpose(-2, -1)) / torch.sqrt(
            torch.tensor(d_k, dtype=query.dtype, device=query.device)
        )

        if attn_bias is not None:
            scores = scores + attn_bias

        if debug and (torch.isnan(scores).any() or torch.isinf(scores).any()):
            print(f"  [DEBUG] NaN/Inf in attention scores before mask!")
            print(f"  Query stats: min={query.min():.4f}, max={query.max():.4f}, mean={query.mean():.4f}")
            print(f"  Key stats: min={key.min():.4f}, max={key.max():.4f}, mean={key.mean():.4f}")

        if mask is not None:
            scores = scores.masked_fill(mask, float('-inf'))

        attention_weights = torch.softmax(scores, dim=-1)

        # Rows with every key excluded (boolean mask or -inf bias) come out of softmax as NaN
        if mask is not None:
            attention_weights = attention_weights.masked_fill(mask, 0.0)
        fully_masked = torch.isneginf(scores).all(dim=-1, keepdim=True)
        attention_weights = attention_weights.masked_fill(fully_masked, 0.0)

        if debug and torch.isnan(attention_weights).any():
            print(f"  [DEBUG] NaN in attention_weights after softmax!")
            print(f"  Scores before softmax stats: min={scores.min():.4f}, max={scores.max():.4f}")

        output = torch.matmul(attention_weights, value)

        return output, attention_weights


class AttentionProjections(nn.Module):
    """
    Q, K, V and output projections shared by every multi-head variant.

    Also owns the head bookkeeping: d_k = d_model / num_heads, the 1/√d_k
    scale, and the reshapes between (batch, seq, d_model) and
    (batch, heads, seq, d_k).
    """

    def __init__(self, d_model, num_heads, bias=True):
        """
        Args:
            d_model: Model dimension (must be divisible by num_heads)
            num_heads: Number of attention heads
            bias: Whether the linear projections have a bias term
        """
        super().__init__()

        if num_heads <= 0 or d_model % num_heads != 0:
            raise ValueError(f"d_model ({d_model}) must be divisible by num_heads ({num_heads})")

        self.d_model = d_model
        self.num_heads = num_heads
        self.d_k = d_model // num_heads
        self.scale = self.d_k ** -0.5

        self.W_q = nn.Linear(d_model, d_model, bias=bias)
        self.W_k = nn.Linear(d_model, d_model, bias=bias)
        self.W_v = nn.Linear(d_model, d_model, bias=bias)
        self.W_o = nn.Linear(d_model, d_model, bias=bias)

    def split_heads(self, x):
        """(batch, seq, d_model) → (batch, heads, seq, d_k)"""
        return x.view(x.size(0), -1, self.num_heads, self.d_k).transpose(1, 2)

    def merge_heads(self, x):
        """(batch, heads, seq, d_k) → (batch, seq, d_model)"""
        return x.transpose(1, 2).contiguous().view(x.size(0), -1, self.d_model)

    def forward_qkv(self, query, key, value):
        """Project and split into heads; each result is (batch, heads, seq, d_k)."""
        q = self.split_heads(self.W_q(query))
        k = self.split_heads(self.W_k(key))
        v = self.split_heads(self.W_v(value))
        return q, k, v


class RelPositionBias(nn.Module):
    """
    Positional projection and the two Transformer-XL bias vectors.

    pos_bias_u is added to the queries for the content-content term and
    pos_bias_v for the content-position term. Both have shape
    (num_heads, d_k) and start at zero unless pretrained values are given.
    """

    def __init__(self, d_model, num_heads, pos_bias_u=None, pos_bias_v=None):
        super().__init__()
        self.num_heads = num_heads
        self.d_k = d_model // num_heads

        # No bias: positional embeddings are shared across every layer
        self.linear_pos = nn.Linear(d_model, d_model, bias=False)

        self.pos_bias_u = self._make_bias(pos_bias_u, 'pos_bias_u')
        self.pos_bias_v = self._make_bias(pos_bias_v, 'pos_bias_v')

    def _make_bias(self, value, name):
        shape = (self.num_heads, self.d_k)
        if value is None:
            param = nn.Parameter(torch.empty(shape))
            nn.init.zeros_(param)
            return param
        if tuple(value.shape) != shape:
            raise ValueError(f"{name} must have shape {shape}, got {tuple(value.shape)}")
        if isinstance(value, nn.Parameter):
            return value
        return nn.Parameter(value.detach().clone())

    def project(self, pos_emb):
        """(batch | 1, pos_len, d_model) → (batch | 1, heads, pos_len, d_k)"""
        n_batch_pos = pos_emb.size(0)
        p = self.linear_pos(pos_emb).view(n_batch_pos, -1, self.num_heads, self.d_k)
        return p.transpose(1, 2)


def _extend_mask_to_keys(mask, key_len):
    """
    Left-extend a boolean mask along its last axis to cover key_len keys.

    Cached history frames are real frames, so they are never masked.
    """
    missing = key_len - mask.size(-1)
    if missing <= 0:
        return mask
    history = torch.zeros(*mask.shape[:-1], missing, dtype=mask.dtype, device=mask.device)
    return torch.cat([history, mask], dim=-1)


def _add_head_axis(mask):
    """(seq_q, seq_k) → (1, 1, seq_q, seq_k); (batch, seq_q, seq_k) → (batch, 1, seq_q, seq_k)"""
    if mask.dim() == 2:
        return mask.unsqueeze(0).unsqueeze(0)
    if mask.dim() == 3:
        return mask.unsqueeze(1)
    return mask


class MultiHeadAttention(nn.Module):
    """
    Multi-head attention mechanism.

    Runs scaled dot-product attention once per head, each head working on its
    own d_k-dimensional slice of the projected queries, keys and values.

    How It Works:
    -------------
    1. Project query, key, value with learned linear maps
    2. Split each into num_heads pieces of d_k = d_model / num_heads
    3. softmax(Q·Kᵀ / √d_k + mask) · V for every head in parallel
    4. Concatenate heads and apply the output projection

    Example with d_model=256, num_heads=4:
        query (batch, seq_q, 256), key/value (batch, seq_k, 256)
            ↓ projections + head split
        Q (batch, 4, seq_q, 64), K, V (batch, 4, seq_k, 64)
            ↓ attention per head
        (batch, 4, seq_q, 64)
            ↓ merge heads + output projection
        (batch, seq_q, 256)
    """

    def __init__(self, d_model, num_heads, bias=True):
        """
        Args:
            d_model: Model dimension (must be divisible by num_heads)
            num_heads: Number of attention heads
            bias: Whether the linear projections have a bias term
        """
        super().__init__()
        self.proj = AttentionProjections(d_model, num_heads, bias=bias)
        self.attention = ScaledDotProductAttention()

        self.d_model = d_model
        self.num_heads = num_heads
        self.d_k = self.proj.d_k

    def forward(self, query, key, value, pos_emb=None, mask=None, cache=None,
                return_attention_weights=False, debug=False):
        """
        Args:
            query: (batch, seq_q, d_model)
            key: (batch, seq_k, d_model)
            value: (batch, seq_k, d_model)
            pos_emb: Ignored; accepted so every variant shares one call signature
            mask: Optional mask of shape (seq_q, seq_k), (batch, seq_q, seq_k) or
                  (batch, heads, seq_q, seq_k). Boolean masks exclude True
                  positions; floating-point masks are added to the scores.
            cache: Optional AttentionCache extending key/value with history
            return_attention_weights: Also return (batch, heads, seq_q, seq_k) weights
            debug: Print NaN diagnostics

        Returns:
            output: (batch, seq_q, d_model)
            attention_weights: Only if return_attention_weights=True
        """
        if cache is not None:
            key, value, pos_emb = cache.extend(key, value, pos_emb)

        q, k, v = self.proj.forward_qkv(query, key, value)

        bool_mask = None
        attn_bias = None
        if mask is not None:
            mask = _add_head_axis(mask)
            if mask.dtype == torch.bool:
                bool_mask = _extend_mask_to_keys(mask, k.size(2))
            else:
                attn_bias = mask

        output, attn_weights = self.attention(q, k, v, mask=bool_mask, debug=debug, attn_bias=attn_bias)

        output = self.proj.W_o(self.proj.merge_heads(output))

        if return_attention_weights:
            return output, attn_weights
        return output


class RelPositionMultiHeadAttention(nn.Module):
    """
    Multi-head attention with Transformer-XL relative positional encoding.

    Matrix AC (content-content) is left to the scaled dot-product call by
    feeding it q + u as queries. Matrix BD (content-position) is computed
    against every positional embedding, converted from "embedding index" to
    "key index" by the relative shift, and passed in as an additive bias.

    Relative Shift:
    ---------------
    matrix_bd[i, n] = (q_i + v) · p_n, where embedding n stands for distance
    (T-1) - n. We need it indexed by key j instead, i.e. n = (T-1) - (i - j),
    which is a different diagonal for every row. Padding one zero column on
    the left and reinterpreting the memory with one extra row per query moves
    row i left by (T-1) - i positions in one reshape:

        before (T=3, 5 distances: 2 1 0 -1 -2)     after (keys 0 1 2)
            q0 [ b2  b1  b0  b-1 b-2 ]               q0 [ b0  b-1 b-2 ...]
            q1 [ b2  b1  b0  b-1 b-2 ]      →        q1 [ b1  b0  b-1 ...]
            q2 [ b2  b1  b0  b-1 b-2 ]               q2 [ b2  b1  b0  ...]

    The first seq_k columns are then exactly (q_i + v) · p_{i-j}.
    """

    def __init__(self, d_model, num_heads, bias=True, pos_bias_u=None, pos_bias_v=None):
        """
        Args:
            d_model: Model dimension (must be divisible by num_heads)
            num_heads: Number of attention heads
            bias: Whether the Q/K/V/output projections have a bias term
            pos_bias_u: Optional pretrained (num_heads, d_k) bias for matrix AC
            pos_bias_v: Optional pretrained (num_heads, d_k) bias for matrix BD
        """
        super().__init__()
        self.proj = AttentionProjections(d_model, num_heads, bias=bias)
        self.rel_pos = RelPositionBias(d_model, num_heads, pos_bias_u, pos_bias_v)
        self.attention = ScaledDotProductAttention()

        self.d_model = d_model
        self.num_heads = num_heads
        self.d_k = self.proj.d_k

    @property
    def pos_bias_u(self):
        return self.rel_pos.pos_bias_u

    @property
    def pos_bias_v(self):
        return self.rel_pos.pos_bias_v

    def rel_shift(self, x):
        """
        Convert absolute embedding index to relative offset.

        Args:
            x: (batch, heads, seq_q, pos_len)

        Returns:
            shifted: (batch, heads, seq_q, pos_len)
        """
        b, h, qlen, pos_len = x.size()
        x = F.pad(x, pad=(1, 0))  # (b, h, qlen, pos_len + 1)
        x = x.view(b, h, -1, qlen)  # (b, h, pos_len + 1, qlen)
        x = x[:, :, 1:].view(b, h, qlen, pos_len)
        return x

    def forward(self, query, key, value, pos_emb=None, mask=None, cache=None,
                return_attention_weights=False, debug=False):
        """
        Args:
            query: (batch, seq_q, d_model)
            key: (batch, seq_k, d_model)
            value: (batch, seq_k, d_model)
            pos_emb: (batch | 1, 2 * seq_k - 1, d_model) relative embeddings, required
            mask: Optional boolean mask (batch, seq_q, seq_k) or broadcastable, True = excluded
            cache: Optional AttentionCache extending key/value/pos_emb with history
            return_attention_weights: Also return (batch, heads, seq_q, seq_k) weights
            debug: Print NaN diagnostics

        Returns:
            output: (batch, seq_q, d_model)
            attention_weights: Only if return_attention_weights=True
        """
        if pos_emb is None:
            raise ValueError("pos_emb is required for RelPositionMultiHeadAttention")

        if cache is not None:
            key, value, pos_emb = cache.extend(key, value, pos_emb)

        n_batch = query.size(0)

        # q stays (batch, seq_q, heads, d_k) so the biases broadcast over batch and time
        q = self.proj.W_q(query).view(n_batch, -1, self.num_heads, self.d_k)
        k = self.proj.split_heads(self.proj.W_k(key))
        v = self.proj.split_heads(self.proj.W_v(value))
        p = self.rel_pos.project(pos_emb)

        q_with_bias_u = (q + self.rel_pos.pos_bias_u).transpose(1, 2)
        q_with_bias_v = (q + self.rel_pos.pos_bias_v).transpose(1, 2)

        # (batch, heads, seq_q, pos_len)
        matrix_bd = torch.matmul(q_with_bias_v, p.transpose(-2, -1))
        matrix_bd = self.rel_shift(matrix_bd)

        key_len = k.size(2)
        assert matrix_bd.size(-1) >= key_len, \
            f"Shifted matrix_bd width ({matrix_bd.size(-1)}) is smaller than key length ({key_len})"
        matrix_bd = matrix_bd[:, :, :, :key_len] * self.proj.scale

        bool_mask = None
        if mask is not None:
            bool_mask = _extend_mask_to_keys(_add_head_axis(mask.bool()), key_len)
            matrix_bd = matrix_bd.masked_fill(bool_mask, float('-inf'))

        output, attn_weights = self.attention(
            q_with_bias_u, k, v, mask=bool_mask, debug=debug, attn_bias=matrix_bd
        )

        output = self.proj.W_o(self.proj.merge_heads(output))

        if return_attention_weights:
            return output, attn_weights
        return output


class RelPositionMultiHeadLocalAttention(nn.Module):
    """
    Relative-position attention restricted to a sliding window.

    Every query i attends only to keys i - left ... i + right. Scores are kept
    in banded form (batch, heads, seq, 2w + 1) with w = max(left, right), so
    cost and memory grow as O(seq · w) instead of O(seq²).

    Pipeline:
    ---------
    1. Project Q, K, V, P and pad the time axis to a multiple of 2w
    2. matrix AC = banded (q + u) · k                  (batch, heads, seq, 2w + 1)
    3. matrix BD = (q + v) · pᵀ                        (batch, heads, seq, pos_len)
       The local positional encoding already has one embedding per window
       offset, so BD needs no relative shift, only aligning with AC's columns.
    4. Add BD into AC's window columns, -inf outside the (left, right) window
    5. Scale, add the banded key padding mask, softmax
    6. Zero the rows of padded queries
    7. context = banded prob · v, trim the time padding, output projection

    Column alignment (left=2, right=1, so w=2):

        AC column:      0     1     2     3     4
        key offset:    -2    -1     0    +1    +2
        BD column:      0     1     2     3     -
        result:        AC+BD AC+BD AC+BD AC+BD  -inf
    """

    def __init__(self, d_model, num_heads, bias=True, pos_bias_u=None, pos_bias_v=None,
                 att_context_size=(256, 256)):
        """
        Args:
            d_model: Model dimension (must be divisible by num_heads)
            num_heads: Number of attention heads
            bias: Whether the Q/K/V/output projections have a bias term
            pos_bias_u: Optional pretrained (num_heads, d_k) bias for matrix AC
            pos_bias_v: Optional pretrained (num_heads, d_k) bias for matrix BD
            att_context_size: (left, right) context, both > 0
        """
        super().__init__()

        left, right = att_context_size
        if min(left, right) <= 0:
            raise ValueError(
                f"Context size for RelPositionMultiHeadLocalAttention must be > 0, got {tuple(att_context_size)}"
            )

        self.proj = AttentionProjections(d_model, num_heads, bias=bias)
        self.rel_pos = RelPositionBias(d_model, num_heads, pos_bias_u, pos_bias_v)

        self.att_context_size = (left, right)
        self.w = max(left, right)

        self.d_model = d_model
        self.num_heads = num_heads
        self.d_k = self.proj.d_k

    @property
    def pos_bias_u(self):
        return self.rel_pos.pos_bias_u

    @property
    def pos_bias_v(self):
        return self.rel_pos.pos_bias_v

    def _add_positional_scores(self, matrix_ac, matrix_bd):
        """
        Add matrix BD into the window columns of matrix AC (in place) and push
        every column outside the (left, right) window to -inf.

        matrix_bd holds either left + right + 1 embeddings (distances left ...
        -right) or 2w + 1 embeddings (distances w ... -w).
        """
        left, right = self.att_context_size
        w = self.w
        band = matrix_ac.size(-1)
        bd_width = matrix_bd.size(-1)

        assert band == 2 * w + 1, f"matrix_ac width {band} does not match window 2*{w}+1"
        assert bd_width in (left + right + 1, 2 * w + 1), \
            f"pos_emb length {bd_width} matches neither left+right+1 ({left + right + 1}) nor 2w+1 ({2 * w + 1})"

        # BD column holding distance 0
        bd_center = w if bd_width == 2 * w + 1 else left

        # Left context: key offsets -left ... -1
        n_left = min(left, w, bd_center)
        if n_left > 0:
            matrix_ac[:, :, :, w - n_left:w] += matrix_bd[:, :, :, bd_center - n_left:bd_center]

        # Current frame and right context: key offsets 0 ... +right
        n_right = min(right + 1, band - w, bd_width - bd_center)
        if n_right > 0:
            matrix_ac[:, :, :, w:w + n_right] += matrix_bd[:, :, :, bd_center:bd_center + n_right]

        # Inside the kernel's 2w + 1 band but outside the (left, right) window
        left_mask_end = min(w - left, band)
        right_mask_start = min(w + right + 1, band)
        if left_mask_end > 0:
            matrix_ac[:, :, :, :left_mask_end] = float('-inf')
        if right_mask_start < band:
            matrix_ac[:, :, :, right_mask_start:] = float('-inf')

        return matrix_ac

    def forward(self, query, key, value, pos_emb=None, mask=None, cache=None,
                return_attention_weights=False, debug=False):
        """
        Args:
            query: (batch, seq_q, d_model)
            key: (batch, seq_k, d_model), seq_k >= seq_q
            value: (batch, seq_k, d_model)
            pos_emb: (batch | 1, left + right + 1, d_model) window embeddings, required
            mask: Optional boolean padding mask (batch, seq_q), True = padding.
                  A (batch, seq_k) mask covering cached history is accepted too.
            cache: Optional AttentionCache extending key/value with history
            return_attention_weights: Also return banded (batch, heads, seq_q, 2w + 1) weights
            debug: Print NaN diagnostics

        Returns:
            output: (batch, seq_q, d_model)
            attention_weights: Only if return_attention_weights=True
        """
        if pos_emb is None:
            raise ValueError("pos_emb is required for RelPositionMultiHeadLocalAttention")

        if cache is not None:
            key, value, pos_emb = cache.extend(key, value, pos_emb)

        n_batch, seq_q = query.size(0), query.size(1)
        if mask is None:
            mask = torch.zeros(n_batch, seq_q, dtype=torch.bool, device=query.device)

        q, k, v = self.proj.forward_qkv(query, key, value)
        key_len = k.size(2)

        # Keys cover history + chunk; queries are the chunk at the right end
        key_mask = _extend_mask_to_keys(mask.bool(), key_len)
        query_mask = key_mask[:, key_len - seq_q:]

        w = self.w
        pad_len = (2 * w - seq_q % (2 * w)) % (2 * w)  # pad time to a multiple of 2w
        q = F.pad(q, (0, 0, 0, pad_len))  # (batch, head, time, d_k)
        k = F.pad(k, (0, 0, 0, pad_len))
        v = F.pad(v, (0, 0, 0, pad_len))
        query_mask = torch.cat([query_mask, query_mask.new_ones(n_batch, pad_len)], dim=1)
        key_mask = torch.cat([key_mask, key_mask.new_ones(n_batch, pad_len)], dim=1)

        q_with_bias_u = q + self.rel_pos.pos_bias_u.unsqueeze(1)
        q_with_bias_v = q + self.rel_pos.pos_bias_v.unsqueeze(1)

        # (batch, head, time, 2w + 1)
        matrix_ac = banded_matmul_qk(q_with_bias_u, k, w)

        p = self.rel_pos.project(pos_emb)
        # (batch, head, time, pos_len)
        matrix_bd = torch.matmul(q_with_bias_v, p.transpose(-2, -1))

        scores = self._add_positional_scores(matrix_ac, matrix_bd) * self.proj.scale

        # Banded key padding mask: -inf wherever the referenced key is padding
        query_mask = query_mask.unsqueeze(1).unsqueeze(-1)  # (batch, 1, time, 1)
        key_mask = key_mask.unsqueeze(1).unsqueeze(-1)
        float_mask = torch.zeros_like(key_mask, dtype=scores.dtype).masked_fill(key_mask, float('-inf'))
        ones = torch.ones_like(query_mask, dtype=scores.dtype)
        d_mask = banded_matmul_qk(ones, float_mask, w)

        scores = scores + d_mask

        if debug and torch.isnan(scores).any():
            print(f"  [DEBUG] NaN in local attention scores!")
            print(f"  matrix_bd stats: min={matrix_bd.min():.4f}, max={matrix_bd.max():.4f}")

        attn = torch.softmax(scores, dim=-1).masked_fill(query_mask, 0.0)

        # (batch, time, head, d_k) → (batch, time, d_model)
        out = banded_matmul_pv(attn, v, w)
        out = out.reshape(n_batch, -1, self.d_model)[:, :seq_q]

        output = self.proj.W_o(out)

        if debug and torch.isnan(output).any():
            print(f"  [DEBUG] NaN in local attention output!")
            print(f"  Value stats: min={v.min():.4f}, max={v.max():.4f}, mean={v.mean():.4f}")

        if return_attention_weights:
            return output, attn[:, :, :seq_q]
        return output
