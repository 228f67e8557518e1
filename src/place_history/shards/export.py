"""Parquet export of the global digest -> label mapping."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict

import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)


SCHEMA = pa.schema(
    [
        ("author_digest", pa.uint64()),
        ("author_label", pa.string()),
    ]
)


def export_identity_index(labels: Dict[int, str], out_path: Path) -> int:
    """Write ``labels`` sorted by digest. Returns the number of rows written."""

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_suffix(out_path.suffix + ".tmp")

    digests = sorted(labels)
    table = pa.table(
        {
            "author_digest": digests,
            "author_label": [labels[d] for d in digests],
        },
        schema=SCHEMA,
    )

    try:
        pq.write_table(table, tmp_path, compression="zstd", compression_level=3)
        tmp_path.replace(out_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    logger.info("Exported %d participants to %s", table.num_rows, out_path)
    return table.num_rows
