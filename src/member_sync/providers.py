"""
File-based snapshot providers.

A snapshot file holds every member the source system currently considers
active. JSON files contain a list of ``{external_id, secondary_key, payload}``
objects (bare or nested under one of the usual envelope keys); CSV files have
``external_id`` and ``secondary_key`` columns, all other columns form the
payload.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from .models import SourceRecord, parse_list_envelope
from .sync.exceptions import SnapshotError, UnrecognizedResponseError
from .sync.interfaces import SourceProvider

logger = logging.getLogger(__name__)

ID_COLUMN = "external_id"
SECONDARY_KEY_COLUMN = "secondary_key"


def _validate_records(source: str, rows: List[Dict[str, Any]]) -> List[SourceRecord]:
    records = []
    for index, row in enumerate(rows):
        try:
            records.append(SourceRecord.model_validate(row))
        except ValidationError as e:
            raise SnapshotError(source, f"invalid record at position {index}: {e.errors()[0]['msg']}")
    return records


class JsonSnapshotProvider(SourceProvider):
    """Reads a snapshot from a JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @property
    def name(self) -> str:
        return f"json:{self.path.name}"

    def fetch_snapshot(self) -> List[SourceRecord]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                body = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotError(self.name, str(e))

        try:
            rows = parse_list_envelope(body).items
        except UnrecognizedResponseError as e:
            raise SnapshotError(self.name, e.message)

        records = _validate_records(self.name, rows)
        logger.info(f"Loaded {len(records)} records from {self.path}")
        return records


class CsvSnapshotProvider(SourceProvider):
    """Reads a snapshot from a CSV file, sniffing the delimiter."""

    def __init__(self, path: Union[str, Path], encoding: str = 'utf-8'):
        self.path = Path(path)
        self.encoding = encoding

    @property
    def name(self) -> str:
        return f"csv:{self.path.name}"

    def fetch_snapshot(self) -> List[SourceRecord]:
        rows = []
        try:
            with open(self.path, 'r', encoding=self.encoding, newline='') as f:
                sample = f.read(1024)
                f.seek(0)
                try:
                    dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
                except csv.Error:
                    # Semicolon exports are the common case for spreadsheet tools
                    dialect = csv.excel()
                    dialect.delimiter = ';'

                reader = csv.DictReader(f, dialect=dialect)
                if not reader.fieldnames or ID_COLUMN not in reader.fieldnames:
                    raise SnapshotError(self.name, f"missing '{ID_COLUMN}' column")

                for row in reader:
                    external_id = (row.pop(ID_COLUMN, None) or "").strip()
                    if not external_id:
                        logger.warning(f"Skipping row {reader.line_num} in {self.path}: no {ID_COLUMN}")
                        continue
                    secondary_key = (row.pop(SECONDARY_KEY_COLUMN, None) or "").strip() or None
                    payload = {key: value for key, value in row.items() if key is not None}
                    rows.append({
                        ID_COLUMN: external_id,
                        SECONDARY_KEY_COLUMN: secondary_key,
                        "payload": payload,
                    })
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise SnapshotError(self.name, str(e))

        records = _validate_records(self.name, rows)
        logger.info(f"Loaded {len(records)} records from {self.path}")
        return records


def provider_for_path(path: Union[str, Path]) -> SourceProvider:
    """Choose a snapshot provider by file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".json":
        return JsonSnapshotProvider(path)
    if suffix in (".csv", ".txt"):
        return CsvSnapshotProvider(path)
    raise ValueError(f"Unsupported snapshot format: {path.suffix or path.name}")
