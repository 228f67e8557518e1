from __future__ import annotations

from typing import Optional


class ShardError(RuntimeError):
    def __init__(self, message: str, *, shard_index: Optional[int] = None):
        if shard_index is not None:
            message = f"shard {shard_index}: {message}"
        super().__init__(message)
        self.shard_index = shard_index


class NonexistentShardError(ShardError):
    """Shard index outside ``[0, TOTAL_SHARDS)``."""


class ShardIoError(ShardError):
    """Local filesystem, decompression or text decoding failure."""


class ShardNetworkError(ShardError):
    """Transport failure or non-success HTTP status while downloading."""


class ShardDeserializeError(ShardError):
    """A line of the shard CSV did not match the record grammar."""
