"""
Banded (sliding window) matmul kernels for local attention.

Local attention lets every query see only a window of 2w + 1 keys around its
own position. Storing the scores as a dense (seq_q, seq_k) matrix and masking
everything outside the window wastes O(n²) memory and compute. Instead we keep
a compact "banded" layout:

    Dense scores (seq_q, seq_k):          Banded scores (seq_q, 2w + 1):

        k0  k1  k2  k3  k4  k5                -2  -1   0  +1  +2
    q0 [ x   x   x   .   .   . ]          q0 [ -∞  -∞   x   x   x ]
    q1 [ x   x   x   x   .   . ]          q1 [ -∞   x   x   x   x ]
    q2 [ x   x   x   x   x   . ]   →      q2 [  x   x   x   x   x ]
    q3 [ .   x   x   x   x   x ]          q3 [  x   x   x   x   x ]
    q4 [ .   .   x   x   x   x ]          q4 [  x   x   x   x  -∞ ]
    q5 [ .   .   .   x   x   x ]          q5 [  x   x   x  -∞  -∞ ]

    (w = 2, columns of the banded layout are relative offsets)

Column j of the banded layout refers to key position s(i) + j - w, where s(i)
is the key position the query is aligned to.

Stick-to-right alignment:
-------------------------
In streaming inference the keys/values carry history that the current query
chunk does not have (seq_k > seq_q). The query chunk is the *tail* of the key
sequence, so query i is aligned to key position

    s(i) = seq_k - seq_q + i

When seq_k == seq_q this is simply s(i) = i.

Both kernels loop over the 2w + 1 relative offsets and are vectorized over
every (batch, head, query) triple. Work per call is O(seq · w · d_k) and
nothing of size seq_q × seq_k is ever allocated.
"""

import torch


def stick_to_right_index(query_len, key_len, device=None):
    """
    Key position each query is aligned to.

    Args:
        query_len: Number of query positions
        key_len: Number of key/value positions (>= query_len)
        device: Device for the returned index tensor

    Returns:
        index: Long tensor of shape (query_len,) holding key_len - query_len + i
    """
    return torch.arange(query_len, device=device) + (key_len - query_len)


def _band_offsets(query_len, key_len, w, offset, device):
    """Key index and in-bounds flag for one relative offset of the band."""
    key_idx = stick_to_right_index(query_len, key_len, device) + (offset - w)
    in_bounds = (key_idx >= 0) & (key_idx < key_len)
    return key_idx.clamp(0, key_len - 1), in_bounds


def banded_matmul_qk(q, k, w):
    """
    Banded query·key scores.

    For every (batch, head, query i, offset j) computes

        out[b, h, i, j] = Σ_d q[b, h, i, d] · k[b, h, s(i) + j - w, d]

    and writes -inf where s(i) + j - w falls outside the key sequence.

    The same kernel builds the banded padding mask: passing an all-ones query
    of width 1 and a {0, -inf} "key" returns, for every query and offset,
    whether the referenced key is padding.

    Args:
        q: Query tensor of shape (batch, heads | 1, seq_q, d)
        k: Key tensor of shape (batch, heads | 1, seq_k, d), seq_k >= seq_q
        w: Half window size; the band has 2w + 1 columns

    Returns:
        scores: Tensor of shape (batch, heads, seq_q, 2w + 1), dtype of q
    """
    assert q.dim() == 4 and k.dim() == 4, \
        f"Expected rank-4 q and k, got {tuple(q.shape)} and {tuple(k.shape)}"
    assert q.size(-1) == k.size(-1), \
        f"Feature width mismatch: q has {q.size(-1)}, k has {k.size(-1)}"

    seq_q = q.size(2)
    seq_k = k.size(2)
    assert seq_k >= seq_q, f"Keys ({seq_k}) must be at least as long as queries ({seq_q})"

    batch = max(q.size(0), k.size(0))
    heads = max(q.size(1), k.size(1))
    band = 2 * w + 1

    # float32 accumulator at least, cast back to the working dtype on write
    acc_dtype = torch.promote_types(q.dtype, torch.float32)
    out = torch.full((batch, heads, seq_q, band), float('-inf'), dtype=acc_dtype, device=q.device)
    q_acc = q.to(acc_dtype)
    k_acc = k.to(acc_dtype)

    for offset in range(band):
        key_idx, in_bounds = _band_offsets(seq_q, seq_k, w, offset, q.device)
        # (batch, heads, seq_q, d) keys, one per query for this offset
        k_band = k_acc.index_select(2, key_idx)
        dots = (q_acc * k_band).sum(dim=-1)
        out[:, :, :, offset] = torch.where(in_bounds, dots, out[:, :, :, offset])

    return out.to(q.dtype)


def banded_matmul_pv(prob, v, w):
    """
    Banded probability·value aggregation.

    For every (batch, query i, head, channel d) computes

        out[b, i, h, d] = Σ_j prob[b, h, i, j] · v[b, h, s(i) + j - w, d]

    skipping out-of-bounds value positions. The output is laid out as
    (batch, seq, heads, d) so merging heads is a plain reshape.

    Args:
        prob: Banded attention weights of shape (batch, heads, seq_p, 2w + 1)
        v: Values of shape (batch, heads, seq_v, d), seq_v >= seq_p
        w: Half window size

    Returns:
        context: Tensor of shape (batch, seq_p, heads, d), dtype of prob
    """
    assert prob.dim() == 4 and v.dim() == 4, \
        f"Expected rank-4 prob and v, got {tuple(prob.shape)} and {tuple(v.shape)}"
    assert prob.size(-1) == 2 * w + 1, \
        f"Band width {prob.size(-1)} does not match window 2*{w}+1"

    batch, heads, seq_p, band = prob.shape
    seq_v = v.size(2)
    d_v = v.size(-1)
    assert seq_v >= seq_p, f"Values ({seq_v}) must be at least as long as probabilities ({seq_p})"

    acc_dtype = torch.promote_types(prob.dtype, torch.float32)
    out = torch.zeros((batch, seq_p, heads, d_v), dtype=acc_dtype, device=prob.device)
    # (batch, seq, heads, ·) layout for both operands
    prob_acc = prob.to(acc_dtype).transpose(1, 2)
    v_acc = v.to(acc_dtype).transpose(1, 2)

    for offset in range(band):
        val_idx, in_bounds = _band_offsets(seq_p, seq_v, w, offset, prob.device)
        v_band = v_acc.index_select(1, val_idx)
        weight = prob_acc[..., offset:offset + 1]
        weight = torch.where(in_bounds.view(1, -1, 1, 1), weight, torch.zeros_like(weight))
        out += weight * v_band

    return out.to(prob.dtype)


def local_attention_mask(query_len, key_len, att_context_size, device=None):
    """
    Dense (seq_q, seq_k) boolean mask equivalent to the (left, right) window.

    True marks keys outside [s(i) - left, s(i) + right]. Only meant for
    checking banded attention against dense attention; building it costs
    O(seq_q · seq_k), which is exactly what the kernels avoid.
    """
    left, right = att_context_size
    query_pos = stick_to_right_index(query_len, key_len, device).unsqueeze(1)
    key_pos = torch.arange(key_len, device=device).unsqueeze(0)
    offset = key_pos - query_pos
    return (offset < -left) | (offset > right)
