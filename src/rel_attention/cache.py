"""
Streaming cache interface for attention layers.

During streaming inference the encoder sees audio in chunks. Each chunk's
queries should still be able to attend to frames from earlier chunks, so the
keys/values (and the positional embeddings covering them) have to be
extended with history before attention runs:

    Chunk n:   queries  [q_n0 ... q_nc]
               keys     [history ... | k_n0 ... k_nc]
                                       ↑ queries stick to the right end

The attention layers only need one capability from a cache: hand back
extended key, value and positional-embedding sequences. How the cache stores
history, how much of it it keeps and when it drops frames is the business of
the streaming orchestration layer, not of this module.
"""

from abc import ABC, abstractmethod


class AttentionCache(ABC):
    """Capability interface: extend key/value/pos_emb sequences with history."""

    @abstractmethod
    def extend(self, key, value, pos_emb):
        """
        Prepend cached history to the current chunk.

        Args:
            key: Raw (unprojected) keys of shape (batch, time, d_model)
            value: Raw values of shape (batch, time, d_model)
            pos_emb: Positional embeddings for the chunk, or None

        Returns:
            key: Keys of shape (batch, cache_len + time, d_model)
            value: Values of shape (batch, cache_len + time, d_model)
            pos_emb: Positional embeddings covering the extended keys
        """
