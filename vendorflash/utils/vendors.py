"""
Vendor profiles: command templates and output markers per silicon vendor.

One generic runner drives every vendor tool; what differs is captured here as
data. Templates are token tuples (no shell), formatted per token with the
partition name, image or output path, port and loader. Reboot modes are
appended to the reboot template when the vendor tool accepts one.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from .partitions import (
    PartitionTable,
    is_scatter_text,
    parse_gpt,
    parse_mtk_gpt,
    parse_pit,
    parse_scatter,
)
from .tools import ToolKind

logger = logging.getLogger(__name__)


class Vendor(str, Enum):
    SAMSUNG = "samsung"
    QUALCOMM = "qualcomm"
    MEDIATEK = "mediatek"


class Operation(str, Enum):
    FLASH = "flash"
    PRINT_TABLE = "print_table"
    ERASE = "erase"
    BACKUP = "backup"
    REBOOT = "reboot"


@dataclass
class OutputVerdict:
    success: bool
    error: Optional[str] = None


def _mediatek_table(raw_text: str) -> PartitionTable:
    if is_scatter_text(raw_text):
        return parse_scatter(raw_text)
    return parse_mtk_gpt(raw_text)


@dataclass(frozen=True)
class VendorProfile:
    """Everything vendor-specific about driving a flashing tool"""
    vendor: Vendor
    display_name: str
    tool: ToolKind
    templates: Dict[Operation, Tuple[str, ...]]
    success_markers: Pattern
    failure_markers: Pattern
    table_parser: Callable[[str], PartitionTable]
    supports_loader: bool = False
    supports_port: bool = False
    upper_case_hints: bool = False
    reboot_modes: Tuple[str, ...] = ()

    def supports(self, operation: Operation) -> bool:
        return operation in self.templates

    def normalize_hint(self, name: str) -> str:
        """Partition name as the vendor tool expects it when no device table is known"""
        return name.upper() if self.upper_case_hints else name

    def build_args(
        self,
        operation: Operation,
        partition: Optional[str] = None,
        image: Optional[str] = None,
        port: Optional[str] = None,
        loader: Optional[str] = None,
        output: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> List[str]:
        """
        Build the argument list for one tool invocation.

        Raises:
            ValueError: operation or reboot mode unsupported by this vendor,
                or a template placeholder has no value
        """
        operation = Operation(operation)
        if operation not in self.templates:
            raise ValueError(f"{self.display_name} does not support {operation.value}")

        values = {"partition": partition, "image": image, "output": output}
        args: List[str] = []
        if self.supports_loader and loader:
            args.append(f"--loader={loader}")
        if self.supports_port and port:
            args.append(f"--port={port}")

        for token in self.templates[operation]:
            for key, value in values.items():
                placeholder = "{" + key + "}"
                if placeholder in token:
                    if not value:
                        raise ValueError(f"{operation.value} on {self.display_name} requires {key}")
                    token = token.replace(placeholder, str(value))
            args.append(token)

        if operation == Operation.REBOOT and mode and mode != "normal":
            if mode not in self.reboot_modes:
                supported = ", ".join(("normal",) + self.reboot_modes)
                raise ValueError(f"{self.display_name} cannot reboot to {mode} (supported: {supported})")
            args.append(mode)
        return args

    def analyze_output(self, exit_text: str) -> OutputVerdict:
        """Decide success from tool output. Failure markers win over success markers."""
        text = exit_text or ""
        failure = self.failure_markers.search(text)
        if failure:
            line = next(
                (l.strip() for l in text.splitlines() if self.failure_markers.search(l)),
                failure.group(0),
            )
            return OutputVerdict(success=False, error=line)
        if self.success_markers.search(text):
            return OutputVerdict(success=True)

        last_line = next((l.strip() for l in reversed(text.splitlines()) if l.strip()), "")
        return OutputVerdict(success=False, error=f"No success marker in tool output: {last_line or '(no output)'}")


_FAILURE = re.compile(r"\bFAILED\b|\bfailed\b|\bFailed\b|\bERROR\b|\berror\b|\bError\b")

PROFILES: Dict[Vendor, VendorProfile] = {
    Vendor.SAMSUNG: VendorProfile(
        vendor=Vendor.SAMSUNG,
        display_name="Samsung (Heimdall)",
        tool=ToolKind.HEIMDALL,
        templates={
            Operation.FLASH: ("flash", "--{partition}", "{image}", "--no-reboot"),
            Operation.PRINT_TABLE: ("print-pit", "--no-reboot"),
            # A session opened without --no-reboot restarts the device when it closes
            Operation.REBOOT: ("print-pit",),
        },
        success_markers=re.compile(r"Successfully|successful"),
        failure_markers=_FAILURE,
        table_parser=parse_pit,
        upper_case_hints=True,
    ),
    Vendor.QUALCOMM: VendorProfile(
        vendor=Vendor.QUALCOMM,
        display_name="Qualcomm (EDL)",
        tool=ToolKind.EDL,
        templates={
            Operation.FLASH: ("w", "{partition}", "{image}"),
            Operation.PRINT_TABLE: ("printgpt",),
            Operation.ERASE: ("e", "{partition}"),
            Operation.BACKUP: ("r", "{partition}", "{output}"),
            Operation.REBOOT: ("reset",),
        },
        success_markers=re.compile(r"Done|successfully|\bok\b|\bOKAY\b|Wrote"),
        failure_markers=_FAILURE,
        table_parser=parse_gpt,
        supports_loader=True,
        supports_port=True,
        reboot_modes=("edl", "recovery", "bootloader"),
    ),
    Vendor.MEDIATEK: VendorProfile(
        vendor=Vendor.MEDIATEK,
        display_name="MediaTek (MTKClient)",
        tool=ToolKind.MTKCLIENT,
        templates={
            Operation.FLASH: ("w", "{partition}", "{image}"),
            Operation.PRINT_TABLE: ("printgpt",),
            Operation.ERASE: ("e", "{partition}"),
            Operation.BACKUP: ("r", "{partition}", "{output}"),
            Operation.REBOOT: ("reset",),
        },
        success_markers=re.compile(r"Done|successfully|\bok\b|\bOKAY\b|Wrote"),
        failure_markers=_FAILURE,
        table_parser=_mediatek_table,
        reboot_modes=("recovery", "bootloader", "fastboot", "brom"),
    ),
}


def get_profile(vendor) -> VendorProfile:
    try:
        return PROFILES[Vendor(vendor)]
    except ValueError:
        raise ValueError(f"Unknown vendor: {vendor}. Expected one of: {', '.join(v.value for v in Vendor)}")


def parse_partition_table(vendor, raw_text: str) -> PartitionTable:
    """Parse a partition table capture with the parser for a vendor"""
    return get_profile(vendor).table_parser(raw_text)


__all__ = [
    "Vendor",
    "Operation",
    "OutputVerdict",
    "VendorProfile",
    "PROFILES",
    "get_profile",
    "parse_partition_table",
]
