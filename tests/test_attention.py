"""Tests for attention mechanisms."""

import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, str(Path(__file__).parent.parent))
from src.rel_attention.attention import (
    ScaledDotProductAttention,
    MultiHeadAttention,
    RelPositionMultiHeadAttention,
    AttentionProjections,
)
from src.rel_attention.cache import AttentionCache
from src.rel_attention.embeddings import RelPositionalEncoding


class PrependHistoryCache(AttentionCache):
    """Test cache: prepend a fixed history to key and value."""

    def __init__(self, history):
        self.history = history

    def extend(self, key, value, pos_emb):
        key = torch.cat([self.history, key], dim=1)
        value = torch.cat([self.history, value], dim=1)
        return key, value, pos_emb


class TestScaledDotProductAttention:
    """Tests for scaled dot-product attention."""

    def test_output_shape(self):
        """Test that output shapes are correct."""
        attention = ScaledDotProductAttention()

        query = torch.randn(2, 10, 64)
        key = torch.randn(2, 12, 64)
        value = torch.randn(2, 12, 48)

        output, attention_weights = attention(query, key, value)

        assert output.shape == (2, 10, 48)
        assert attention_weights.shape == (2, 10, 12)

    def test_attention_weights_sum_to_one(self):
        """Test that attention weights sum to 1.0 across the key dimension."""
        attention = ScaledDotProductAttention()

        query = torch.randn(2, 8, 32)
        key = torch.randn(2, 8, 32)
        value = torch.randn(2, 8, 32)

        _, attention_weights = attention(query, key, value)

        sums = attention_weights.sum(dim=-1)
        assert torch.allclose(sums, torch.ones_like(sums), atol=1e-6)

    def test_masked_positions_get_zero_weight(self):
        """Test that masked keys receive exactly zero attention weight."""
        attention = ScaledDotProductAttention()

        query = torch.randn(1, 4, 8)
        key = torch.randn(1, 4, 8)
        value = torch.randn(1, 4, 8)

        mask = torch.triu(torch.ones(4, 4), diagonal=1).bool().unsqueeze(0)

        _, attention_weights = attention(query, key, value, mask=mask)

        for i in range(4):
            for j in range(i + 1, 4):
                assert attention_weights[0, i, j].item() == 0.0

    def test_fully_masked_row_is_zero_not_nan(self):
        """Test that a query with every key masked gets an all-zero row."""
        attention = ScaledDotProductAttention()

        query = torch.randn(1, 3, 8)
        key = torch.randn(1, 3, 8)
        value = torch.randn(1, 3, 8)

        mask = torch.zeros(1, 3, 3, dtype=torch.bool)
        mask[0, 1] = True

        output, attention_weights = attention(query, key, value, mask=mask)

        assert not torch.isnan(output).any()
        assert torch.equal(attention_weights[0, 1], torch.zeros(3))
        assert torch.equal(output[0, 1], torch.zeros(8))

    def test_all_negative_infinity_bias_row_is_zero_not_nan(self):
        """Test that an additive bias excluding every key also gives an all-zero row."""
        attention = ScaledDotProductAttention()

        query = torch.randn(1, 3, 8)
        key = torch.randn(1, 3, 8)
        value = torch.randn(1, 3, 8)

        bias = torch.zeros(1, 3, 3)
        bias[0, 2] = float('-inf')

        output, attention_weights = attention(query, key, value, attn_bias=bias)

        assert not torch.isnan(output).any()
        assert torch.equal(attention_weights[0, 2], torch.zeros(3))
        assert torch.equal(output[0, 2], torch.zeros(8))

    def test_attn_bias_is_added_to_scores(self):
        """Test that the additive bias shifts the softmax as expected."""
        attention = ScaledDotProductAttention()

        query = torch.zeros(1, 1, 4)
        key = torch.randn(1, 3, 4)
        value = torch.randn(1, 3, 4)

        # Zero query → uniform scores, so the weights are softmax(bias)
        bias = torch.tensor([[[0.0, 1.0, 2.0]]])
        _, attention_weights = attention(query, key, value, attn_bias=bias)

        assert torch.allclose(attention_weights, torch.softmax(bias, dim=-1), atol=1e-6)

    def test_single_token_sequence(self):
        """Test with a single token (edge case)."""
        attention = ScaledDotProductAttention()

        query = torch.randn(2, 1, 16)
        key = torch.randn(2, 1, 16)
        value = torch.randn(2, 1, 16)

        output, attention_weights = attention(query, key, value)

        assert torch.allclose(attention_weights, torch.ones_like(attention_weights))
        assert torch.allclose(output, value)


class TestAttentionProjections:
    """Tests for the shared projection block."""

    def test_d_k_and_scale(self):
        """Test that d_k and scale are derived from d_model and num_heads."""
        proj = AttentionProjections(512, 8)

        assert proj.d_k == 64
        assert proj.scale == pytest.approx(1 / 8)

    def test_invalid_d_model_raises_error(self):
        """Test that d_model not divisible by num_heads is rejected at construction."""
        with pytest.raises(ValueError):
            AttentionProjections(100, 8)

    def test_split_merge_round_trip(self):
        """Test that merge_heads undoes split_heads."""
        proj = AttentionProjections(64, 4)
        x = torch.randn(2, 7, 64)

        heads = proj.split_heads(x)

        assert heads.shape == (2, 4, 7, 16)
        assert torch.equal(proj.merge_heads(heads), x)

    def test_bias_flag(self):
        """Test that bias=False removes bias from every projection."""
        proj = AttentionProjections(64, 4, bias=False)

        for linear in (proj.W_q, proj.W_k, proj.W_v, proj.W_o):
            assert linear.bias is None


class TestMultiHeadAttention:
    """Tests for dense multi-head attention."""

    def test_output_shape(self):
        """Test that output shape follows the query length."""
        mha = MultiHeadAttention(128, 8)

        query = torch.randn(4, 10, 128)
        key = torch.randn(4, 15, 128)

        output = mha(query, key, key)

        assert output.shape == (4, 10, 128)

    def test_different_num_heads(self):
        """Test with various numbers of heads."""
        d_model = 64

        for num_heads in [1, 2, 4, 8]:
            mha = MultiHeadAttention(d_model, num_heads)
            x = torch.randn(2, 5, d_model)

            output = mha(x, x, x)

            assert output.shape == (2, 5, d_model)
            assert mha.d_k == d_model // num_heads

    def test_invalid_d_model_raises_error(self):
        """Test that d_model not divisible by num_heads raises error."""
        with pytest.raises(ValueError):
            MultiHeadAttention(100, 8)

    def test_matches_manual_computation(self):
        """Test against softmax(QKᵀ/√d_k)V written out by hand."""
        torch.manual_seed(0)
        mha = MultiHeadAttention(16, 2)
        x = torch.randn(1, 6, 16)

        with torch.no_grad():
            output = mha(x, x, x)

            q = mha.proj.split_heads(mha.proj.W_q(x))
            k = mha.proj.split_heads(mha.proj.W_k(x))
            v = mha.proj.split_heads(mha.proj.W_v(x))
            weights = torch.softmax(q @ k.transpose(-2, -1) / (8 ** 0.5), dim=-1)
            expected = mha.proj.W_o(mha.proj.merge_heads(weights @ v))

        assert torch.allclose(output, expected, atol=1e-6)

    def test_boolean_and_additive_masks_agree(self):
        """Test that a boolean mask and its -inf additive form give the same output."""
        torch.manual_seed(0)
        mha = MultiHeadAttention(32, 4)
        x = torch.randn(2, 5, 32)

        bool_mask = torch.triu(torch.ones(5, 5), diagonal=1).bool()
        float_mask = torch.zeros(5, 5).masked_fill(bool_mask, float('-inf'))

        with torch.no_grad():
            out_bool = mha(x, x, x, mask=bool_mask)
            out_float = mha(x, x, x, mask=float_mask)

        assert torch.allclose(out_bool, out_float, atol=1e-6)

    def test_fully_masked_row_in_additive_mask_is_zero_not_nan(self):
        """Test that a float mask with an all -inf row gives zero weights instead of NaN."""
        torch.manual_seed(0)
        mha = MultiHeadAttention(16, 2)
        x = torch.randn(1, 3, 16)

        mask = torch.zeros(3, 3)
        mask[0] = float('-inf')

        with torch.no_grad():
            output, weights = mha(x, x, x, mask=mask, return_attention_weights=True)

        assert not torch.isnan(output).any()
        assert torch.count_nonzero(weights[:, :, 0]) == 0
        # Query 0 has no context, so only the output projection bias remains
        assert torch.allclose(output[0, 0], mha.proj.W_o.bias)
        assert torch.allclose(weights[:, :, 1:].sum(dim=-1), torch.ones(1, 2, 2), atol=1e-6)

    def test_return_attention_weights(self):
        """Test that per-head weights are returned on request."""
        mha = MultiHeadAttention(32, 4)
        query = torch.randn(2, 3, 32)
        key = torch.randn(2, 7, 32)

        output, weights = mha(query, key, key, return_attention_weights=True)

        assert output.shape == (2, 3, 32)
        assert weights.shape == (2, 4, 3, 7)

    def test_cache_extends_keys(self):
        """Test that a cache's history is attended to."""
        torch.manual_seed(0)
        mha = MultiHeadAttention(32, 4)
        history = torch.randn(1, 4, 32)
        chunk = torch.randn(1, 3, 32)
        full = torch.cat([history, chunk], dim=1)

        with torch.no_grad():
            expected = mha(chunk, full, full)
            output, weights = mha(chunk, chunk, chunk, cache=PrependHistoryCache(history),
                                  return_attention_weights=True)

        assert weights.shape == (1, 4, 3, 7)
        assert torch.allclose(output, expected, atol=1e-6)


class TestRelPositionMultiHeadAttention:
    """Tests for Transformer-XL relative-position attention."""

    def test_output_shape(self):
        """Test output shape with positional embeddings from RelPositionalEncoding."""
        attn = RelPositionMultiHeadAttention(64, 4)
        x = torch.randn(2, 9, 64)
        _, pos_emb = RelPositionalEncoding(64)(x)

        output = attn(x, x, x, pos_emb=pos_emb)

        assert pos_emb.shape == (1, 17, 64)
        assert output.shape == (2, 9, 64)

    def test_missing_pos_emb_raises(self):
        """Test that pos_emb is mandatory."""
        attn = RelPositionMultiHeadAttention(64, 4)
        x = torch.randn(1, 5, 64)

        with pytest.raises(ValueError, match="pos_emb"):
            attn(x, x, x)

    def test_biases_zero_initialized(self):
        """Test that pos_bias_u / pos_bias_v start at zero with shape (heads, d_k)."""
        attn = RelPositionMultiHeadAttention(64, 4)

        assert attn.pos_bias_u.shape == (4, 16)
        assert attn.pos_bias_v.shape == (4, 16)
        assert torch.count_nonzero(attn.pos_bias_u) == 0
        assert torch.count_nonzero(attn.pos_bias_v) == 0

    def test_pretrained_biases_are_used(self):
        """Test that supplied biases are kept as parameters."""
        u = torch.randn(4, 16)
        v = torch.randn(4, 16)

        attn = RelPositionMultiHeadAttention(64, 4, pos_bias_u=u, pos_bias_v=v)

        assert torch.equal(attn.pos_bias_u, u)
        assert torch.equal(attn.pos_bias_v, v)
        assert isinstance(attn.pos_bias_u, torch.nn.Parameter)

    def test_pretrained_bias_wrong_shape_raises(self):
        """Test that biases of the wrong shape are rejected."""
        with pytest.raises(ValueError):
            RelPositionMultiHeadAttention(64, 4, pos_bias_u=torch.zeros(4, 8), pos_bias_v=torch.zeros(4, 16))

    def test_rel_shift_matches_explicit_relative_indices(self):
        """
        Test the relative shift against a direct O(n²) gather.

        Embedding n stands for distance (T-1) - n, so the entry for query i
        and key j must come from column (T-1) - (i - j).
        """
        attn = RelPositionMultiHeadAttention(16, 2)
        T = 6
        x = torch.randn(2, 2, T, 2 * T - 1)

        shifted = attn.rel_shift(x)[:, :, :, :T]

        expected = torch.empty(2, 2, T, T)
        for i in range(T):
            for j in range(T):
                expected[:, :, i, j] = x[:, :, i, (T - 1) - (i - j)]

        assert torch.equal(shifted, expected)

    def test_rel_shift_preserves_shape(self):
        """Test that the shift keeps (batch, heads, seq_q, pos_len)."""
        attn = RelPositionMultiHeadAttention(16, 2)
        x = torch.randn(3, 2, 4, 11)

        assert attn.rel_shift(x).shape == (3, 2, 4, 11)

    def test_matches_direct_relative_computation(self):
        """Test the full forward pass against scores built with explicit relative indices."""
        torch.manual_seed(0)
        d_model, num_heads, T = 16, 2, 5
        attn = RelPositionMultiHeadAttention(d_model, num_heads)
        with torch.no_grad():
            attn.pos_bias_u.normal_()
            attn.pos_bias_v.normal_()

        x = torch.randn(1, T, d_model)
        _, pos_emb = RelPositionalEncoding(d_model)(x)

        with torch.no_grad():
            output = attn(x, x, x, pos_emb=pos_emb)

            q = attn.proj.W_q(x).view(1, T, num_heads, -1)
            k = attn.proj.split_heads(attn.proj.W_k(x))
            v = attn.proj.split_heads(attn.proj.W_v(x))
            p = attn.rel_pos.project(pos_emb)
            q_u = (q + attn.pos_bias_u).transpose(1, 2)
            q_v = (q + attn.pos_bias_v).transpose(1, 2)

            scores = torch.empty(1, num_heads, T, T)
            for i in range(T):
                for j in range(T):
                    rel = (T - 1) - (i - j)
                    scores[:, :, i, j] = (q_u[:, :, i] * k[:, :, j]).sum(-1) + (q_v[:, :, i] * p[:, :, rel]).sum(-1)
            weights = torch.softmax(scores / (8 ** 0.5), dim=-1)
            expected = attn.proj.W_o(attn.proj.merge_heads(weights @ v))

        assert torch.allclose(output, expected, atol=1e-5)

    def test_masked_keys_get_zero_weight(self):
        """Test that a padding mask removes keys for every query."""
        attn = RelPositionMultiHeadAttention(32, 4)
        x = torch.randn(2, 6, 32)
        _, pos_emb = RelPositionalEncoding(32)(x)

        mask = torch.zeros(2, 6, 6, dtype=torch.bool)
        mask[1, :, 4:] = True

        _, weights = attn(x, x, x, pos_emb=pos_emb, mask=mask, return_attention_weights=True)

        assert torch.count_nonzero(weights[1, :, :, 4:]) == 0
        assert torch.count_nonzero(weights[0, :, :, 4:]) > 0

    def test_streaming_with_cache_matches_full_sequence(self):
        """Test that a query chunk plus cached history reproduces the full-sequence tail."""
        torch.manual_seed(0)
        d_model = 32
        attn = RelPositionMultiHeadAttention(d_model, 4)
        encoding = RelPositionalEncoding(d_model)

        x = torch.randn(1, 10, d_model)
        history, chunk = x[:, :7], x[:, 7:]

        with torch.no_grad():
            _, full_pos_emb = encoding(x)
            full = attn(x, x, x, pos_emb=full_pos_emb)

            _, chunk_pos_emb = encoding(chunk, cache_len=history.size(1))
            streamed = attn(chunk, chunk, chunk, pos_emb=chunk_pos_emb, cache=PrependHistoryCache(history))

        assert torch.allclose(streamed, full[:, 7:], atol=1e-5)

    def test_positional_biases_change_output(self):
        """Test that pos_bias_u and pos_bias_v take part in the computation."""
        torch.manual_seed(0)
        attn = RelPositionMultiHeadAttention(32, 4)
        x = torch.randn(2, 5, 32)
        _, pos_emb = RelPositionalEncoding(32)(x)

        with torch.no_grad():
            baseline = attn(x, x, x, pos_emb=pos_emb)
            attn.pos_bias_u.fill_(0.5)
            with_u = attn(x, x, x, pos_emb=pos_emb)
            attn.pos_bias_v.fill_(0.5)
            with_uv = attn(x, x, x, pos_emb=pos_emb)

        assert not torch.allclose(baseline, with_u)
        assert not torch.allclose(with_u, with_uv)
