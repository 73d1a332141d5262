"""
Vendor-neutral partition model and partition-table parsers.

Each silicon vendor describes its partition layout differently:

- Samsung: heimdall ``print-pit`` output, one ``--- Entry #N ---`` block per partition
- Qualcomm: edl ``printgpt`` output, one ``name start count size`` line per partition
- MediaTek: SP Flash Tool scatter files (``- partition_index:`` blocks) and
  mtkclient ``printgpt`` output (``name 0xSTART 0xLENGTH (size)``)

All parsers are pure text-to-model transforms. They never raise on malformed
lines: tool output drifts between firmware and tool versions, so anything
unrecognised is skipped. A capture with no entries yields an empty table and
callers use ``PartitionTable.raise_if_empty()`` to signal it.
"""

import re
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional

from ..core.errors import PartitionTableEmpty
from ..config import settings

logger = logging.getLogger(__name__)

GPT_SECTOR_SIZE = 512

PIT_ENTRY_MARKER = "--- Entry #"

_GPT_LINE = re.compile(r"(\w+)\s+(\d+)\s+(\d+)\s+([\d.]+\s*\w+)")
_MTK_GPT_LINE = re.compile(r"(\w+)\s+(0x[0-9A-Fa-f]+)\s+(0x[0-9A-Fa-f]+)\s+\(([\d.]+\s*\w+)\)")


@dataclass(frozen=True)
class PartitionEntry:
    """One flashable region, normalized to byte offsets"""
    name: str
    start_offset: int = 0
    size_bytes: int = 0
    source_image_path: Optional[str] = None
    vendor_tag: str = ""
    flash_filename: Optional[str] = None

    @property
    def key(self) -> str:
        """Upper-cased name used for every cross-table lookup"""
        return self.name.upper()

    def bind_image(self, image_path: str) -> "PartitionEntry":
        """Return a copy of this entry bound to a firmware image"""
        return replace(self, source_image_path=str(image_path))

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "start_offset": self.start_offset,
            "size_bytes": self.size_bytes,
            "source_image_path": self.source_image_path,
            "vendor_tag": self.vendor_tag,
            "flash_filename": self.flash_filename,
        }


@dataclass
class PartitionTable:
    """Ordered partition entries captured from one device or firmware file"""
    source: str
    entries: List[PartitionEntry] = field(default_factory=list)

    def __iter__(self) -> Iterator[PartitionEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, index: int) -> PartitionEntry:
        return self.entries[index]

    def __bool__(self) -> bool:
        return bool(self.entries)

    @property
    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def find(self, name: str) -> Optional[PartitionEntry]:
        key = name.upper()
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def add(self, entry: PartitionEntry) -> bool:
        """Append an entry unless its name is already present. Returns True if added."""
        if self.find(entry.name) is not None:
            logger.warning(f"Duplicate partition '{entry.name}' in {self.source}, keeping first entry")
            return False
        self.entries.append(entry)
        return True

    def raise_if_empty(self) -> "PartitionTable":
        if not self.entries:
            raise PartitionTableEmpty(self.source)
        return self


def _field_value(line: str) -> str:
    """Value after the first colon of a 'Label: value' line"""
    return line.split(":", 1)[1].strip() if ":" in line else ""


def _parse_int(value: str) -> Optional[int]:
    value = value.strip()
    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        return int(value)
    except ValueError:
        return None


def parse_pit(raw_text: str, sector_size: Optional[int] = None) -> PartitionTable:
    """Parse heimdall ``print-pit`` output into a partition table."""
    sector_size = sector_size or settings.PIT_SECTOR_SIZE
    table = PartitionTable(source="Samsung PIT")

    blocks = (raw_text or "").split(PIT_ENTRY_MARKER)
    # Text before the first marker is the PIT header
    for block in blocks[1:]:
        name = ""
        flash_filename = ""
        block_offset = 0
        block_count = 0

        for line in block.splitlines():
            trimmed = line.strip()
            # heimdall 1.4 prints "Partition Block Count:", older builds "Block Count:"
            if trimmed.startswith("Partition Block "):
                trimmed = trimmed[len("Partition "):]
            if trimmed.startswith("Partition Name:"):
                name = _field_value(trimmed)
            elif trimmed.startswith("Flash Filename:"):
                flash_filename = _field_value(trimmed)
            elif trimmed.startswith("Block Size/Offset:"):
                block_offset = _parse_int(_field_value(trimmed)) or 0
            elif trimmed.startswith("Block Count:"):
                block_count = _parse_int(_field_value(trimmed)) or 0

        if not name:
            continue

        table.add(PartitionEntry(
            name=name,
            start_offset=block_offset * sector_size,
            size_bytes=block_count * sector_size,
            vendor_tag=f"flash_filename={flash_filename}" if flash_filename else "",
            flash_filename=flash_filename or None,
        ))

    logger.debug(f"Parsed {len(table)} partitions from PIT output")
    return table


def parse_gpt(raw_text: str) -> PartitionTable:
    """Parse Qualcomm edl ``printgpt`` output into a partition table."""
    table = PartitionTable(source="Qualcomm GPT")

    for line in (raw_text or "").splitlines():
        match = _GPT_LINE.search(line)
        if not match:
            continue
        start_sector = int(match.group(2))
        sector_count = int(match.group(3))
        table.add(PartitionEntry(
            name=match.group(1),
            start_offset=start_sector * GPT_SECTOR_SIZE,
            size_bytes=sector_count * GPT_SECTOR_SIZE,
            vendor_tag=f"size={match.group(4).strip()}",
        ))

    logger.debug(f"Parsed {len(table)} partitions from GPT dump")
    return table


def _scatter_entry(fields: Dict[str, str]) -> Optional[PartitionEntry]:
    name = fields.get("partition_name", "")
    if not name:
        return None

    tags = []
    for key in ("is_download", "type", "region"):
        if fields.get(key):
            tags.append(f"{key}={fields[key]}")

    file_name = fields.get("file_name", "")
    if file_name.upper() == "NONE":
        file_name = ""

    return PartitionEntry(
        name=name,
        start_offset=_parse_int(fields.get("linear_start_addr", "0")) or 0,
        size_bytes=_parse_int(fields.get("partition_size", "0")) or 0,
        vendor_tag=";".join(tags),
        flash_filename=file_name or None,
    )


SCATTER_KEYS = (
    "partition_name",
    "file_name",
    "linear_start_addr",
    "partition_size",
    "is_download",
    "type",
    "region",
)


def parse_scatter(raw_text: str) -> PartitionTable:
    """Parse a MediaTek scatter file into a partition table."""
    table = PartitionTable(source="MediaTek scatter")
    current: Optional[Dict[str, str]] = None

    def flush():
        if current is None:
            return
        entry = _scatter_entry(current)
        if entry is not None:
            table.add(entry)

    for line in (raw_text or "").splitlines():
        trimmed = line.strip().lstrip("-").strip()
        if trimmed.startswith("partition_index:"):
            flush()
            current = {}
            continue
        if current is None or ":" not in trimmed:
            continue

        key, value = trimmed.split(":", 1)
        key = key.strip()
        if key in SCATTER_KEYS:
            current[key] = value.strip()

    # The last block has no following marker
    flush()

    logger.debug(f"Parsed {len(table)} partitions from scatter file")
    return table


def parse_mtk_gpt(raw_text: str) -> PartitionTable:
    """Parse mtkclient ``printgpt`` output (hex offsets and lengths)."""
    table = PartitionTable(source="MediaTek GPT")

    for line in (raw_text or "").splitlines():
        match = _MTK_GPT_LINE.search(line)
        if not match:
            continue
        table.add(PartitionEntry(
            name=match.group(1),
            start_offset=int(match.group(2), 16),
            size_bytes=int(match.group(3), 16),
            vendor_tag=f"size={match.group(4).strip()}",
        ))

    return table


def is_scatter_text(raw_text: str) -> bool:
    return "partition_index" in (raw_text or "")


def is_download_entry(entry: PartitionEntry) -> bool:
    """True if a scatter entry is marked for download"""
    return "is_download=true" in entry.vendor_tag.lower()
