import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional
import yaml
from webmify.domain.exceptions import LedgerParseError
from webmify.domain.models import LedgerEntry

RECORD_KEY = "converted_files"
RECORD_SEPARATOR = "|"
FIELD_SEPARATOR = ","

logger = logging.getLogger(__name__)

def parse_record(record: str) -> LedgerEntry:
    """Parses one 'path,size' record. The last comma separates the size."""
    path, sep, size = record.rpartition(FIELD_SEPARATOR)
    if not sep or not path:
        raise LedgerParseError(f"Missing field separator in record {record!r}")
    try:
        value = int(size.strip())
    except ValueError:
        raise LedgerParseError(f"Invalid size in record {record!r}") from None
    if value < 0:
        raise LedgerParseError(f"Negative size in record {record!r}")
    return LedgerEntry(output_path=path, original_size_bytes=value)

def parse_entries(serialized: str) -> List[LedgerEntry]:
    """Parses the whole record string, skipping blank and malformed records."""
    entries = []
    for record in serialized.split(RECORD_SEPARATOR):
        if not record.strip():
            continue
        try:
            entries.append(parse_record(record))
        except LedgerParseError as e:
            logger.warning(f"Skipping ledger record: {e}")
    return entries

def serialize_entries(entries: Dict[str, int]) -> str:
    return RECORD_SEPARATOR.join(f"{path}{FIELD_SEPARATOR}{size}" for path, size in entries.items())


class SizeLedger:
    """
    Durable mapping from an output path to the size of the file it was converted from.

    The whole mapping is stored as a single named record in a small YAML file.
    Entries are never reconciled against the filesystem; a deleted output keeps
    its entry until someone calls remove().
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, int] = {}
        self._lock = threading.RLock()

    @staticmethod
    def key(output_path) -> str:
        """Absolute, symlink-free form, so relative and ~ paths find the same entry."""
        return str(Path(output_path).expanduser().resolve())

    def put(self, output_path, size: int):
        if size < 0:
            raise ValueError(f"Size must be non-negative, got {size}")
        with self._lock:
            self._entries[self.key(output_path)] = int(size)

    def get(self, output_path) -> Optional[int]:
        with self._lock:
            return self._entries.get(self.key(output_path))

    def remove(self, output_path) -> bool:
        with self._lock:
            return self._entries.pop(self.key(output_path), None) is not None

    def get_all(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._entries)

    def __contains__(self, output_path) -> bool:
        with self._lock:
            return self.key(output_path) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def load(self) -> int:
        """Merges persisted entries into memory. Returns the number of entries loaded."""
        if not self.path.exists():
            return 0
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Cannot read ledger {self.path}: {e}")
            return 0

        serialized = data.get(RECORD_KEY, "") if isinstance(data, dict) else ""
        if not isinstance(serialized, str):
            logger.error(f"Ledger {self.path} has no '{RECORD_KEY}' record, ignoring it")
            return 0

        entries = parse_entries(serialized)
        with self._lock:
            for entry in entries:
                self._entries[entry.output_path] = entry.original_size_bytes
        logger.debug(f"Loaded {len(entries)} ledger entries from {self.path}")
        return len(entries)

    def save(self):
        """Writes the full mapping, replacing the previous file atomically."""
        with self._lock:
            serialized = serialize_entries(self._entries)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w") as f:
            yaml.safe_dump({RECORD_KEY: serialized}, f, default_flow_style=False)
        os.replace(tmp_path, self.path)
