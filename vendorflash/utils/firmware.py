"""
Firmware package extraction.

Turns vendor firmware containers into (partition hint, image path, role)
candidates:

- Samsung Odin zips holding role archives (``BL_*.tar.md5``, ``AP_*.tar.md5``,
  ``CP_*``, ``CSC_*``, ``HOME_CSC_*``), or a single role archive
- MediaTek packages described by a scatter file
- raw zips of partition images (Qualcomm and others)

Everything is unpacked into a per-session scratch directory that is removed
when the session ends.
"""

import uuid
import shutil
import zipfile
import tarfile
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from .archives import extract_tar, extract_zip
from .partitions import is_download_entry, parse_scatter
from ..config import settings

logger = logging.getLogger(__name__)

ROLE_ORDER = ("BL", "AP", "CP", "CSC", "HOME_CSC")

IMAGE_EXTENSIONS = (".img", ".bin", ".mbn", ".elf")


@dataclass(frozen=True)
class ExtractedImage:
    partition_hint: str
    path: Path
    role: Optional[str] = None


def classify_role(file_name: str) -> Optional[str]:
    """Firmware role from an Odin archive name, or None"""
    name = Path(file_name).name.upper()
    # HOME_CSC contains the CSC token, so it is matched first
    if "HOME_CSC" in name or "CSC_HOME" in name:
        return "HOME_CSC"
    for role in ("AP", "BL", "CP", "CSC"):
        if name.startswith(f"{role}_"):
            return role
    for role in ("AP", "BL", "CP", "CSC"):
        if f"_{role}_" in name or name.endswith(f"_{role}.TAR") or name.endswith(f"_{role}.TAR.MD5"):
            return role
    return None


def is_role_archive(path: Path) -> bool:
    name = path.name.lower()
    return name.endswith(".tar") or name.endswith(".tar.md5")


def is_image(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def is_scatter_file(path: Path) -> bool:
    name = path.name.lower()
    return "scatter" in name and name.endswith(".txt")


def _role_rank(image: ExtractedImage) -> int:
    if image.role in ROLE_ORDER:
        return ROLE_ORDER.index(image.role)
    return len(ROLE_ORDER)


def _hint_for(path: Path) -> str:
    return path.stem


@contextmanager
def scratch_session(root: Optional[Path] = None) -> Iterator[Path]:
    """Create a unique scratch directory and always remove it afterwards"""
    base = Path(root) if root else settings.scratch_path
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"session-{uuid.uuid4().hex}"
    path.mkdir()
    logger.debug(f"Created scratch directory {path}")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed scratch directory {path}")


class FirmwareExtractor:
    """Unpacks firmware containers into flashable image candidates"""

    def extract(self, container, dest_dir) -> List[ExtractedImage]:
        container = Path(container)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        if not container.exists():
            logger.error(f"Firmware package not found: {container}")
            return []

        if zipfile.is_zipfile(container):
            images = self._extract_zip_package(container, dest_dir)
        elif is_scatter_file(container):
            images = self.images_from_scatter(container)
        elif is_image(container):
            images = [ExtractedImage(_hint_for(container), container, None)]
        elif is_role_archive(container) or tarfile.is_tarfile(container):
            images = self._extract_role_archive(container, dest_dir, classify_role(container.name))
        else:
            logger.warning(f"Unrecognized firmware package: {container.name}")
            images = []

        images.sort(key=_role_rank)
        logger.info(f"Extracted {len(images)} image(s) from {container.name}")
        return images

    def _extract_zip_package(self, container: Path, dest_dir: Path) -> List[ExtractedImage]:
        logger.info(f"Extracting {container.name}...")
        try:
            files = sorted(extract_zip(container, dest_dir))
        except (OSError, zipfile.BadZipFile) as e:
            logger.error(f"Failed to extract {container.name}: {e}")
            return []

        scatter_files = [f for f in files if is_scatter_file(f)]
        if scatter_files:
            if len(scatter_files) > 1:
                logger.warning(f"Multiple scatter files in {container.name}, using {scatter_files[0].name}")
            return self.images_from_scatter(scatter_files[0])

        images: List[ExtractedImage] = []
        for path in files:
            if is_role_archive(path):
                role = classify_role(path.name)
                if role is None:
                    logger.warning(f"Could not determine firmware role of {path.name}")
                images.extend(self._extract_role_archive(path, dest_dir, role))
            elif is_image(path):
                images.append(ExtractedImage(_hint_for(path), path, None))
        return images

    def _extract_role_archive(self, archive: Path, dest_dir: Path, role: Optional[str]) -> List[ExtractedImage]:
        target = dest_dir / (role or "unclassified")
        logger.info(f"Extracting {archive.name} ({role or 'no role'})...")
        try:
            files = extract_tar(archive, target)
        except (OSError, tarfile.TarError) as e:
            logger.error(f"Failed to extract {archive.name}: {e}")
            return []

        return [
            ExtractedImage(_hint_for(path), path, role)
            for path in sorted(files)
            if is_image(path)
        ]

    def images_from_scatter(self, scatter_path: Path) -> List[ExtractedImage]:
        """Downloadable scatter entries whose image file sits next to the scatter file"""
        scatter_path = Path(scatter_path)
        try:
            table = parse_scatter(scatter_path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            logger.error(f"Failed to read scatter file {scatter_path}: {e}")
            return []

        images = []
        for entry in table:
            if not is_download_entry(entry) or not entry.flash_filename:
                continue
            image_path = scatter_path.parent / entry.flash_filename
            if not image_path.is_file():
                logger.warning(f"Scatter references missing image {entry.flash_filename} for {entry.name}")
                continue
            images.append(ExtractedImage(entry.name, image_path, None))
        return images


__all__ = [
    "ExtractedImage",
    "FirmwareExtractor",
    "classify_role",
    "scratch_session",
    "ROLE_ORDER",
    "IMAGE_EXTENSIONS",
]
