"""Flash plan construction and the data-preservation policy"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from .firmware import ExtractedImage
from .partitions import PartitionEntry, PartitionTable
from .vendors import VendorProfile
from ..core.errors import PlanInvariantViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanStep:
    entry: PartitionEntry
    image_path: str
    role: Optional[str] = None

    @property
    def name(self) -> str:
        return self.entry.name


@dataclass
class FlashPlan:
    """Ordered partition writes for one session"""
    steps: List[PlanStep] = field(default_factory=list)
    preserve_user_data: bool = True

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def partition_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def validate(self) -> "FlashPlan":
        """
        Check plan invariants before any device I/O.

        Raises:
            PlanInvariantViolation: two steps write the same partition, or
                both CSC and HOME_CSC are present
        """
        seen: Dict[str, PlanStep] = {}
        for step in self.steps:
            key = step.entry.key
            if key in seen:
                raise PlanInvariantViolation(
                    f"Partition {step.name} appears twice in flash plan "
                    f"({seen[key].image_path} and {step.image_path})"
                )
            seen[key] = step

        roles = {step.role for step in self.steps}
        if "CSC" in roles and "HOME_CSC" in roles:
            raise PlanInvariantViolation("Flash plan contains both CSC and HOME_CSC")
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "preserve_user_data": self.preserve_user_data,
            "steps": [
                {"partition": step.name, "image": step.image_path, "role": step.role}
                for step in self.steps
            ],
        }


def apply_preservation_policy(images: Iterable[ExtractedImage], preserve_user_data: bool) -> List[ExtractedImage]:
    """
    Drop the CSC variant that conflicts with the data policy.

    CSC wipes user data on flash; HOME_CSC keeps it. Keeping data therefore
    drops CSC, wiping drops HOME_CSC.
    """
    dropped_role = "CSC" if preserve_user_data else "HOME_CSC"
    kept = []
    for image in images:
        if image.role == dropped_role:
            logger.info(f"Skipping {image.partition_hint} from {dropped_role} (preserve_user_data={preserve_user_data})")
            continue
        kept.append(image)
    return kept


def build_plan(
    images: Iterable[ExtractedImage],
    profile: VendorProfile,
    preserve_user_data: bool = True,
    table: Optional[PartitionTable] = None,
    only: Optional[Iterable[str]] = None,
) -> FlashPlan:
    """
    Build and validate a flash plan from extracted images.

    When a device partition table is given, images are matched to its entries
    by partition name, then by the table's expected file name; images with no
    matching partition are skipped. Without a table the image hint becomes the
    partition name.
    """
    wanted = {name.upper() for name in only} if only else None
    steps = []

    for image in apply_preservation_policy(images, preserve_user_data):
        if table is not None:
            entry = table.find(image.partition_hint) or _find_by_filename(table, image)
            if entry is None:
                logger.warning(f"No partition in {table.source} for {image.path.name}, skipping")
                continue
        else:
            entry = PartitionEntry(name=profile.normalize_hint(image.partition_hint))

        if wanted is not None and entry.key not in wanted:
            continue

        steps.append(PlanStep(entry=entry.bind_image(str(image.path)), image_path=str(image.path), role=image.role))

    plan = FlashPlan(steps=steps, preserve_user_data=preserve_user_data)
    return plan.validate()


def _find_by_filename(table: PartitionTable, image: ExtractedImage) -> Optional[PartitionEntry]:
    file_name = image.path.name.lower()
    for entry in table:
        if entry.flash_filename and entry.flash_filename.lower() == file_name:
            return entry
    return None


__all__ = [
    "PlanStep",
    "FlashPlan",
    "apply_preservation_policy",
    "build_plan",
]
