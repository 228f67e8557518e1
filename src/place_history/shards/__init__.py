"""Canvas history shard pipeline.

Fetch (cache-or-download) -> decode (gzip + CSV) -> per-shard identity index
-> ordered global fold with collision reporting.
"""

from . import decoder, errors, export, fetcher, identity, orchestrator, records

__all__ = ["decoder", "errors", "export", "fetcher", "identity", "orchestrator", "records"]
