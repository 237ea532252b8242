"""
JSON record store

Keeps the medication list as one JSON array on disk, the same shape the web
app keeps in local storage, so either side can load the other's file.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from medsync.records import RecordList, records_from_json, records_to_json

logger = logging.getLogger(__name__)


class JsonRecordStore:
    """File-backed record list. A missing file is an empty store."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> RecordList:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return []
        records = records_from_json(text)
        logger.debug(f"Loaded {len(records)} records from {self.path}")
        return records

    def save(self, records: RecordList) -> None:
        """Replace the file contents atomically"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(records_to_json(records))
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info(f"Saved {len(records)} records to {self.path}")
