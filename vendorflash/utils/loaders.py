"""Lookup of vendor payload files (Qualcomm firehose programmers, MediaTek scatter files)"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..config import settings

logger = logging.getLogger(__name__)

# Qualcomm chipset -> firehose programmer file name
FIREHOSE_LOADERS: Dict[str, str] = {
    "MSM8917": "prog_emmc_firehose_8917.mbn",
    "MSM8937": "prog_emmc_firehose_8937.mbn",
    "MSM8953": "prog_emmc_firehose_8953.mbn",
    "MSM8996": "prog_ufs_firehose_8996.elf",
    "MSM8998": "prog_ufs_firehose_8998.elf",
    "SDM660": "prog_firehose_ddr.elf",
    "SDM670": "prog_firehose_ddr.elf",
    "SDM710": "prog_firehose_ddr.elf",
    "SDM845": "prog_firehose_ddr.elf",
    "SM6115": "prog_firehose_ddr.elf",  # Snapdragon 662
    "SM6125": "prog_firehose_ddr.elf",  # Snapdragon 665
    "SM6150": "prog_firehose_ddr.elf",  # Snapdragon 675
    "SM7125": "prog_firehose_ddr.elf",  # Snapdragon 720G
    "SM7150": "prog_firehose_ddr.elf",  # Snapdragon 730
    "SM7225": "prog_firehose_ddr.elf",  # Snapdragon 750G
    "SM7325": "prog_firehose_ddr.elf",  # Snapdragon 778G
    "SM8150": "prog_firehose_ddr.elf",  # Snapdragon 855
    "SM8250": "prog_firehose_ddr.elf",  # Snapdragon 865
    "SM8350": "prog_firehose_ddr.elf",  # Snapdragon 888
    "SM8450": "prog_firehose_ddr.elf",  # Snapdragon 8 Gen 1
    "SM8550": "prog_firehose_ddr.elf",  # Snapdragon 8 Gen 2
    "SM8650": "prog_firehose_ddr.elf",  # Snapdragon 8 Gen 3
}

LOADER_EXTENSIONS = (".mbn", ".elf", ".bin")


class LoaderStore:
    """
    Finds loader payloads in the managed loaders directory.

    Programmers shared by many chipsets (``prog_firehose_ddr.elf``) are
    expected in a per-chipset subdirectory (``<loaders>/SM8250/``); a flat
    file in the loaders directory is used as a fallback.
    """

    def __init__(self, loaders_dir: Optional[Path] = None):
        self.loaders_dir = Path(loaders_dir) if loaders_dir else settings.loaders_path

    def find_loader(self, chipset: str) -> Optional[Path]:
        chipset = (chipset or "").strip().upper()
        if not chipset or not self.loaders_dir.is_dir():
            return None

        file_name = FIREHOSE_LOADERS.get(chipset)
        if file_name:
            for candidate in (self.loaders_dir / chipset / file_name, self.loaders_dir / file_name):
                if candidate.is_file():
                    logger.info(f"Using loader for {chipset}: {candidate}")
                    return candidate

        # Unknown chipset, or programmer saved under its own name
        for candidate in self.list_loaders():
            if chipset in candidate.name.upper() or chipset in candidate.parent.name.upper():
                logger.info(f"Using loader for {chipset}: {candidate}")
                return candidate

        logger.warning(f"No loader found for {chipset} in {self.loaders_dir}")
        return None

    def find_scatter(self, chipset: str) -> Optional[Path]:
        chipset = (chipset or "").strip()
        if not chipset or not self.loaders_dir.is_dir():
            return None
        for candidate in sorted(self.loaders_dir.rglob("*.txt")):
            name = candidate.name.lower()
            if "scatter" in name and name.startswith(chipset.lower()):
                return candidate
        return None

    def list_loaders(self) -> List[Path]:
        if not self.loaders_dir.is_dir():
            return []
        return sorted(
            p for p in self.loaders_dir.rglob("*")
            if p.is_file() and p.suffix.lower() in LOADER_EXTENSIONS
        )


__all__ = ["LoaderStore", "FIREHOSE_LOADERS"]
