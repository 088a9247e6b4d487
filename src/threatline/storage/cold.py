# Storage Module - Cold Archive
#
# Append-only, compressed history of archived indicators.  Each archival
# run writes one gzip JSON-lines segment; segments are never rewritten.
# Read back only by audit tooling via ``iter_records()``.

import gzip
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..intel.models import Indicator, ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_COLD_DIR = "data/cold"
SEGMENT_GLOB = "segment-*.jsonl.gz"


class ColdArchive:
    """Directory of gzip JSON-lines segments."""

    def __init__(self, directory: str = DEFAULT_COLD_DIR):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seq = 0

    def append(self, indicators: Iterable[Indicator], reason: str = "archive") -> Optional[Path]:
        """Write one segment; returns its path (None if nothing to write)."""
        records = [
            {
                "archived_at": utcnow().isoformat(),
                "reason": reason,
                "indicator": ind.to_dict(),
            }
            for ind in indicators
        ]
        if not records:
            return None
        with self._lock:
            self._seq += 1
            stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
            path = self.directory / f"segment-{stamp}-{self._seq:04d}.jsonl.gz"
            tmp = path.with_suffix(".tmp")
            with gzip.open(tmp, "wt", encoding="utf-8") as f:
                for record in records:
                    f.write(json.dumps(record, default=str) + "\n")
            # Atomic publish: readers never see a half-written segment
            tmp.replace(path)
        logger.info("Archived %d indicators to %s (%s)", len(records), path.name, reason)
        return path

    def segments(self) -> List[Path]:
        return sorted(self.directory.glob(SEGMENT_GLOB))

    def iter_records(self, since: Optional[datetime] = None) -> Iterator[Dict[str, Any]]:
        """Yield archived records, oldest segment first."""
        cutoff = ensure_utc(since) if since else None
        for path in self.segments():
            with gzip.open(path, "rt", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    record = json.loads(line)
                    if cutoff and datetime.fromisoformat(record["archived_at"]) < cutoff:
                        continue
                    yield record

    def iter_indicators(self, since: Optional[datetime] = None) -> Iterator[Indicator]:
        for record in self.iter_records(since):
            yield Indicator.from_dict(record["indicator"])

    def count(self) -> int:
        return sum(1 for _ in self.iter_records())

    def stats(self) -> Dict[str, Any]:
        return {"segments": len(self.segments()), "directory": str(self.directory)}
