"""Source dataset access: the ordered list of raw listings (search.json)."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import orjson

from etl.address_normalizer import address_key
from etl.models import ValuationData

LOGGER = logging.getLogger(__name__)

_BOM = b"\xef\xbb\xbf"


def _full_address(item: Dict[str, Any]) -> Optional[str]:
    address = item.get("address") or {}
    display = address.get("display") or {}
    return display.get("fullAddress")


class SourceDataset(Sequence[Dict[str, Any]]):
    """Read-only ordered listing list, plus valuation write-back for enrichment."""

    def __init__(self, items: List[Dict[str, Any]], path: Optional[Path] = None) -> None:
        self.items = items
        self.path = path

    @classmethod
    def load(cls, path: str | Path) -> SourceDataset:
        path = Path(path)
        raw = path.read_bytes()
        if raw.startswith(_BOM):
            raw = raw[len(_BOM):]
        data = orjson.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a JSON array of listings")
        LOGGER.info("Loaded %d listings from %s", len(data), path)
        return cls(data, path)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index):  # type: ignore[override]
        return self.items[index]

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.items)

    def slice(self, start: int, end: int) -> List[Dict[str, Any]]:
        return self.items[start:end]

    def addresses(self) -> List[Optional[str]]:
        """Full display address of every listing, in source order."""
        return [_full_address(item) if isinstance(item, dict) else None for item in self.items]

    def has_valuation(self, address: str) -> bool:
        key = address_key(address)
        return any(
            isinstance(item, dict)
            and item.get("valuationData")
            and address_key(_full_address(item)) == key
            for item in self.items
        )

    def apply_valuation(self, address: str, valuation: ValuationData) -> int:
        """Attach valuation data to every listing at `address`; returns the match count."""
        key = address_key(address)
        if not key:
            return 0
        matched = 0
        payload = valuation.to_source_dict()
        for item in self.items:
            if isinstance(item, dict) and address_key(_full_address(item)) == key:
                item["valuationData"] = dict(payload)
                matched += 1
        if matched == 0:
            LOGGER.warning("Property not found with address: %s", address)
        return matched

    def save(self, path: Optional[str | Path] = None) -> Path:
        """Write the dataset back atomically (temp file + rename)."""
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ValueError("no path to save the dataset to")
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(orjson.dumps(self.items, option=orjson.OPT_INDENT_2))
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return target
