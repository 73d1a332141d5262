"""Archive extraction that refuses members escaping the destination directory"""

import tarfile
import zipfile
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def _inside(root: Path, target: Path) -> bool:
    return target == root or root in target.parents


def is_archive(path: Path) -> bool:
    path = Path(path)
    if not path.is_file():
        return False
    return zipfile.is_zipfile(path) or tarfile.is_tarfile(path)


def extract_zip(archive: Path, dest: Path) -> List[Path]:
    """Extract a zip archive. Returns the extracted file paths."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    extracted = []

    with zipfile.ZipFile(archive, "r") as zip_ref:
        for member in zip_ref.infolist():
            target = (dest / member.filename).resolve()
            if not _inside(root, target):
                logger.warning(f"Skipping archive member outside destination: {member.filename}")
                continue
            zip_ref.extract(member, dest)
            if not member.is_dir():
                extracted.append(target)

    return extracted


def extract_tar(archive: Path, dest: Path) -> List[Path]:
    """
    Extract a tar archive (plain or compressed). Returns the extracted file paths.

    Samsung ``.tar.md5`` files are plain tars with an MD5 line appended after
    the end-of-archive marker; tarfile stops reading at the marker.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    members = []

    with tarfile.open(archive, "r:*") as tar_ref:
        for member in tar_ref.getmembers():
            target = (dest / member.name).resolve()
            if not _inside(root, target):
                logger.warning(f"Skipping archive member outside destination: {member.name}")
                continue
            if not (member.isfile() or member.isdir()):
                logger.debug(f"Skipping non-regular archive member: {member.name}")
                continue
            members.append(member)

        if hasattr(tarfile, "data_filter"):
            tar_ref.extractall(dest, members=members, filter="data")
        else:
            tar_ref.extractall(dest, members=members)

    return [(dest / m.name).resolve() for m in members if m.isfile()]


def extract_archive(archive: Path, dest: Path) -> List[Path]:
    archive = Path(archive)
    if zipfile.is_zipfile(archive):
        return extract_zip(archive, dest)
    return extract_tar(archive, dest)


__all__ = ["is_archive", "extract_zip", "extract_tar", "extract_archive"]
