"""
Flashing Engine - Vendor-agnostic FSM Implementation

This module sequences one flashing session for any supported vendor:
resolve (or install) the vendor tool, unpack firmware packages into a scratch
directory, build and validate a flash plan, write each partition through the
process runner, then reboot the device.

States:
- IDLE → TOOL_RESOLVING → EXTRACTING → FLASHING → REBOOTING → DONE
- any state → FAILED | CANCELLED

Rules:
- Tool install failures and plan violations end the session before any
  partition is written
- A failed partition does not stop the session unless it is critical
- Cancellation is checked between partitions; an in-flight tool call is
  killed by the runner
- Already-flashed partitions are never rolled back
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from pathlib import Path
import threading
import time
import logging

from .firmware import ExtractedImage, FirmwareExtractor, scratch_session
from .flash_plan import FlashPlan, PlanStep, build_plan
from .loaders import LoaderStore
from .partitions import PartitionTable
from .process import ProcessOutcome, ProcessRunner
from .tools import ToolHandle, ToolResolver
from .vendors import Operation, Vendor, VendorProfile, get_profile
from ..config import settings
from ..core.errors import (
    DeviceCommandFailed,
    PartitionFlashFailed,
    PartitionTableEmpty,
    PlanInvariantViolation,
    ProcessCancelled,
    ProcessTimedOut,
    ToolInstallFailed,
    ToolNotInstalled,
)

logger = logging.getLogger(__name__)


class FlashState(Enum):
    """FSM states of a flashing session"""
    IDLE = "idle"
    TOOL_RESOLVING = "tool_resolving"
    EXTRACTING = "extracting"
    FLASHING = "flashing"
    REBOOTING = "rebooting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FlashProgress:
    """Progress information during flashing"""
    state: FlashState
    step_name: str
    progress_percent: float = 0.0
    message: str = ""
    partition: Optional[str] = None
    partition_index: Optional[int] = None
    total_partitions: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "step_name": self.step_name,
            "progress_percent": round(self.progress_percent, 1),
            "message": self.message,
            "partition": self.partition,
            "partition_index": self.partition_index,
            "total_partitions": self.total_partitions,
        }


@dataclass
class FlashRequest:
    """
    One flashing session.

    Args:
        vendor: Target silicon vendor
        packages: Firmware containers, extracted in order
        images: Explicit partition name -> image path pairs
        preserve_user_data: Keep user data (drops CSC) or wipe it (drops HOME_CSC)
        critical_partitions: Partitions whose failure fails the session
        critical_roles: Firmware roles whose failure fails the session
            (defaults to the CRITICAL_ROLES setting)
        partitions: Only flash these partitions
        device_port: Transport the device is attached to (COM port, USB path)
        loader: Firehose programmer path (Qualcomm)
        chipset: Chipset used to look up a loader when none is given (Qualcomm),
            or a stored scatter file when no package is given (MediaTek)
        use_device_table: Read the device partition table and match images against it
        reboot: Reboot the device after a successful session
        partition_timeout: Per-partition timeout in seconds
    """
    vendor: Vendor
    packages: List[str] = field(default_factory=list)
    images: Dict[str, str] = field(default_factory=dict)
    preserve_user_data: bool = True
    critical_partitions: List[str] = field(default_factory=list)
    critical_roles: Optional[List[str]] = None
    partitions: Optional[List[str]] = None
    device_port: Optional[str] = None
    loader: Optional[str] = None
    chipset: Optional[str] = None
    use_device_table: bool = False
    reboot: bool = True
    partition_timeout: Optional[int] = None

    def __post_init__(self):
        self.vendor = Vendor(self.vendor)

    @property
    def transport_key(self) -> str:
        return self.device_port or f"{self.vendor.value}:default"

    def is_critical(self, step: PlanStep) -> bool:
        if step.entry.key in {p.upper() for p in self.critical_partitions}:
            return True
        roles = self.critical_roles if self.critical_roles is not None else settings.critical_roles_list
        return step.role is not None and step.role.upper() in {r.upper() for r in roles}


@dataclass
class PartitionResult:
    name: str
    status: str  # succeeded, failed, skipped
    role: Optional[str] = None
    image_path: Optional[str] = None
    critical: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "role": self.role,
            "image_path": self.image_path,
            "critical": self.critical,
            "error": self.error,
            "duration": round(self.duration, 2),
        }


@dataclass
class FlashReport:
    """Outcome of a flashing session"""
    status: str = "failed"  # done, failed, cancelled
    final_state: FlashState = FlashState.IDLE
    partitions: List[PartitionResult] = field(default_factory=list)
    error: Optional[str] = None
    rebooted: bool = False

    @property
    def success(self) -> bool:
        return self.status == "done"

    def by_status(self, status: str) -> List[str]:
        return [p.name for p in self.partitions if p.status == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "success": self.success,
            "final_state": self.final_state.value,
            "error": self.error,
            "rebooted": self.rebooted,
            "partitions": [p.to_dict() for p in self.partitions],
            "succeeded": self.by_status("succeeded"),
            "failed": self.by_status("failed"),
            "skipped": self.by_status("skipped"),
        }


def read_partition_table(
    vendor: Vendor,
    handle: ToolHandle,
    runner: ProcessRunner,
    port: Optional[str] = None,
    loader: Optional[str] = None,
    timeout: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PartitionTable:
    """
    Print the device partition table with the vendor tool and parse it.

    Raises:
        ProcessTimedOut: the tool did not finish in time
        ProcessCancelled: the cancel event was set
    """
    profile = get_profile(vendor)
    args = profile.build_args(Operation.PRINT_TABLE, port=port, loader=loader)
    outcome = runner.run(
        handle,
        args,
        timeout=timeout or settings.TABLE_READ_TIMEOUT_SEC,
        cancel_event=cancel_event,
        on_output_line=lambda line: logger.debug(line),
    )
    outcome.raise_for_status()
    table = profile.table_parser(outcome.exit_text)
    logger.info(f"Read {len(table)} partitions from device ({profile.display_name})")
    return table


def _run_device_command(
    profile: VendorProfile,
    handle: ToolHandle,
    runner: ProcessRunner,
    operation: str,
    args: List[str],
    timeout: int,
    cancel_event: Optional[threading.Event] = None,
) -> ProcessOutcome:
    outcome = runner.run(
        handle,
        args,
        timeout=timeout,
        cancel_event=cancel_event,
        on_output_line=lambda line: logger.debug(line),
    )
    outcome.raise_for_status()
    if outcome.returncode == -1 and outcome.pid is None:
        raise DeviceCommandFailed(operation, outcome.exit_text or "Tool could not be launched")

    verdict = profile.analyze_output(outcome.exit_text)
    if not verdict.success:
        raise DeviceCommandFailed(operation, verdict.error or "Unknown error", outcome.exit_text)
    return outcome


def backup_partition(
    vendor: Vendor,
    handle: ToolHandle,
    runner: ProcessRunner,
    partition: str,
    output: str,
    port: Optional[str] = None,
    loader: Optional[str] = None,
    timeout: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Path:
    """
    Read one partition from the device into a file.

    Raises:
        ValueError: the vendor tool cannot read partitions (Samsung)
        DeviceCommandFailed: the tool reported an error or wrote nothing
        ProcessTimedOut: the tool did not finish in time
        ProcessCancelled: the cancel event was set
    """
    profile = get_profile(vendor)
    output_path = Path(output).expanduser()
    args = profile.build_args(Operation.BACKUP, partition=partition, output=str(output_path), port=port, loader=loader)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Reading {partition} to {output_path} ({profile.display_name})")
    operation = f"Backup of {partition}"
    _run_device_command(profile, handle, runner, operation, args, timeout or settings.FLASH_TIMEOUT_SEC, cancel_event)

    if not output_path.is_file() or output_path.stat().st_size == 0:
        raise DeviceCommandFailed(operation, f"No data written to {output_path}")
    logger.info(f"Saved {partition} to {output_path} ({output_path.stat().st_size} bytes)")
    return output_path


def erase_partition(
    vendor: Vendor,
    handle: ToolHandle,
    runner: ProcessRunner,
    partition: str,
    port: Optional[str] = None,
    loader: Optional[str] = None,
    timeout: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
):
    """
    Erase one partition on the device.

    Raises:
        ValueError: the vendor tool cannot erase partitions (Samsung)
        DeviceCommandFailed: the tool reported an error
        ProcessTimedOut: the tool did not finish in time
        ProcessCancelled: the cancel event was set
    """
    profile = get_profile(vendor)
    args = profile.build_args(Operation.ERASE, partition=partition, port=port, loader=loader)

    logger.warning(f"Erasing {partition} ({profile.display_name})")
    _run_device_command(
        profile, handle, runner, f"Erase of {partition}", args,
        timeout or settings.FLASH_TIMEOUT_SEC, cancel_event,
    )
    logger.info(f"Erased {partition}")


def reboot_device(
    vendor: Vendor,
    handle: ToolHandle,
    runner: ProcessRunner,
    mode: Optional[str] = None,
    port: Optional[str] = None,
    loader: Optional[str] = None,
    timeout: Optional[int] = None,
):
    """
    Reboot the device to the system (mode None or "normal") or to a vendor boot mode.

    Raises:
        ValueError: the vendor tool cannot reboot to that mode
        DeviceCommandFailed: the tool reported an error
        ProcessTimedOut: the tool did not finish in time
    """
    profile = get_profile(vendor)
    args = profile.build_args(Operation.REBOOT, port=port, loader=loader, mode=mode)
    target = mode if mode and mode != "normal" else "system"

    outcome = runner.run(handle, args, timeout=timeout or settings.REBOOT_TIMEOUT_SEC)
    outcome.raise_for_status()
    if outcome.returncode != 0 or profile.failure_markers.search(outcome.exit_text):
        raise DeviceCommandFailed(f"Reboot to {target}", outcome.exit_text.strip() or "Tool exited with an error")
    logger.info(f"Device rebooting to {target}")


class FlashOrchestrator:
    """
    Flashing Engine - FSM Implementation

    Usage:
        orchestrator = FlashOrchestrator()
        orchestrator.set_callbacks(on_progress=my_progress_callback, on_log=my_log_callback)

        report = orchestrator.execute(FlashRequest(vendor="samsung", packages=["fw.zip"]))

        if report.success:
            print("Flash completed successfully")
        else:
            print(f"Flash {report.status}: {report.error}")
    """

    def __init__(
        self,
        resolver: Optional[ToolResolver] = None,
        runner: Optional[ProcessRunner] = None,
        extractor: Optional[FirmwareExtractor] = None,
        loader_store: Optional[LoaderStore] = None,
        scratch_root: Optional[Path] = None,
    ):
        self.resolver = resolver or ToolResolver()
        self.runner = runner or ProcessRunner()
        self.extractor = extractor or FirmwareExtractor()
        self.loader_store = loader_store or LoaderStore()
        self.scratch_root = scratch_root

        # Current state
        self.current_state = FlashState.IDLE
        self.progress = FlashProgress(state=FlashState.IDLE, step_name="Idle")

        # Callbacks
        self.on_progress: Optional[Callable[[FlashProgress], None]] = None
        self.on_log: Optional[Callable[[str, str], None]] = None  # (message, level)

    def set_callbacks(
        self,
        on_progress: Optional[Callable[[FlashProgress], None]] = None,
        on_log: Optional[Callable[[str, str], None]] = None,
    ):
        """Set callbacks for progress updates and logging"""
        self.on_progress = on_progress
        self.on_log = on_log

    def _log(self, message: str, level: str = "info"):
        """Internal logging"""
        if self.on_log:
            self.on_log(message, level)
        else:
            logger.log(getattr(logging, level.upper(), logging.INFO), message)

    def _update_progress(
        self,
        step_name: str,
        message: str = "",
        percent: Optional[float] = None,
        partition: Optional[str] = None,
        partition_index: Optional[int] = None,
        total_partitions: Optional[int] = None,
    ):
        """Update progress and notify callbacks. Percent never decreases."""
        current = self.progress.progress_percent
        if percent is not None:
            current = max(current, min(100.0, percent))

        self.progress = FlashProgress(
            state=self.current_state,
            step_name=step_name,
            progress_percent=current,
            message=message,
            partition=partition,
            partition_index=partition_index,
            total_partitions=total_partitions,
        )
        if self.on_progress:
            self.on_progress(self.progress)

    def _transition(self, new_state: FlashState, step_name: str, message: str = ""):
        """Transition to new state and log"""
        old_state = self.current_state
        self.current_state = new_state

        level = "error" if new_state == FlashState.FAILED else "info"
        self._log(f"[STATE: {old_state.value} → {new_state.value}] {message}", level)
        self._update_progress(step_name, message)

    def _finish(self, report: FlashReport, state: FlashState, message: str, error: Optional[str] = None) -> FlashReport:
        report.final_state = state
        report.status = state.value
        report.error = error
        if state == FlashState.DONE:
            self._update_progress("Complete", message, percent=100.0)
        self._transition(state, state.value.capitalize(), message)
        return report

    def _cancelled(self, cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def execute(self, request: FlashRequest, cancel_event: Optional[threading.Event] = None) -> FlashReport:
        """
        Execute a complete flashing session.

        Never raises: every error ends the session as FAILED in the returned report.
        """
        report = FlashReport()
        self.current_state = FlashState.IDLE
        self.progress = FlashProgress(state=FlashState.IDLE, step_name="Idle")

        try:
            profile = get_profile(request.vendor)

            # IDLE → TOOL_RESOLVING
            self._transition(FlashState.TOOL_RESOLVING, "Resolving Tool", f"Locating {profile.tool.value} for {profile.display_name}")
            try:
                handle = self.resolver.resolve(profile.tool)
                if handle is None:
                    self._log(f"{profile.tool.value} is not installed, downloading...", "info")
                    handle = self.resolver.ensure(profile.tool)
            except (ToolNotInstalled, ToolInstallFailed) as e:
                return self._finish(report, FlashState.FAILED, f"Tool unavailable: {e}", str(e))
            self._log(f"Using {profile.tool.value}: {handle.path}", "info")

            loader = self._resolve_loader(profile, request)

            if self._cancelled(cancel_event):
                return self._finish(report, FlashState.CANCELLED, "Cancelled before extraction", "Cancelled")

            # TOOL_RESOLVING → EXTRACTING
            self._transition(FlashState.EXTRACTING, "Extracting Firmware", f"Extracting {len(request.packages)} package(s)")
            with scratch_session(self.scratch_root) as scratch:
                images: List[ExtractedImage] = []
                for index, package in enumerate(request.packages):
                    self._log(f"Extracting {Path(package).name}...", "info")
                    images.extend(self.extractor.extract(package, scratch / f"package-{index}"))
                for name, path in request.images.items():
                    images.append(ExtractedImage(name, Path(path), None))
                if profile.vendor == Vendor.MEDIATEK and request.chipset and not request.packages:
                    images.extend(self._scatter_images(request))
                self._log(f"Found {len(images)} image(s)", "info")

                try:
                    plan = build_plan(
                        images,
                        profile,
                        preserve_user_data=request.preserve_user_data,
                        only=request.partitions,
                    )
                    if plan and request.use_device_table:
                        table = read_partition_table(
                            profile.vendor, handle, self.runner,
                            port=request.device_port, loader=loader, cancel_event=cancel_event,
                        ).raise_if_empty()
                        plan = build_plan(
                            images,
                            profile,
                            preserve_user_data=request.preserve_user_data,
                            table=table,
                            only=request.partitions,
                        )
                except (PlanInvariantViolation, PartitionTableEmpty, ProcessTimedOut) as e:
                    return self._finish(report, FlashState.FAILED, f"Cannot build flash plan: {e}", str(e))
                except ProcessCancelled:
                    return self._finish(report, FlashState.CANCELLED, "Cancelled while reading partition table", "Cancelled")

                if not plan:
                    return self._finish(report, FlashState.FAILED, "No partition images to flash", "No partition images to flash")

                return self.execute_plan(plan, handle, request, cancel_event, loader=loader, report=report)

        except Exception as e:
            logger.exception("Flash execution failed")
            return self._finish(report, FlashState.FAILED, f"Flash failed: {e}", str(e))

    def _resolve_loader(self, profile: VendorProfile, request: FlashRequest) -> Optional[str]:
        if not profile.supports_loader:
            return None
        if request.loader:
            return request.loader
        if request.chipset:
            found = self.loader_store.find_loader(request.chipset)
            if found:
                self._log(f"Using loader {found.name} for {request.chipset}", "info")
                return str(found)
            self._log(f"No loader found for {request.chipset}, relying on the tool's autodetection", "warning")
        return None

    def _scatter_images(self, request: FlashRequest) -> List[ExtractedImage]:
        """Images listed by the stored scatter file for the chipset. Explicit images take precedence."""
        scatter = self.loader_store.find_scatter(request.chipset)
        if scatter is None:
            self._log(f"No scatter file found for {request.chipset}", "warning")
            return []

        explicit = {name.lower() for name in request.images}
        images = [
            image for image in self.extractor.images_from_scatter(scatter)
            if image.partition_hint.lower() not in explicit
        ]
        self._log(f"Using scatter file {scatter.name} for {request.chipset} ({len(images)} image(s))", "info")
        return images

    def execute_plan(
        self,
        plan: FlashPlan,
        handle: ToolHandle,
        request: FlashRequest,
        cancel_event: Optional[threading.Event] = None,
        loader: Optional[str] = None,
        report: Optional[FlashReport] = None,
    ) -> FlashReport:
        """Flash every step of a validated plan, then reboot"""
        report = report or FlashReport()
        profile = get_profile(request.vendor)
        steps = plan.steps
        total = len(steps)

        self._transition(
            FlashState.FLASHING,
            "Flashing",
            f"Flashing {total} partition(s) (preserve_user_data={plan.preserve_user_data})",
        )

        for index, step in enumerate(steps):
            critical = request.is_critical(step)

            if self._cancelled(cancel_event):
                self._skip_remaining(report, steps[index:], request)
                self._log("Partitions already flashed stay flashed; no rollback is performed", "warning")
                return self._finish(report, FlashState.CANCELLED, "Flash cancelled by user", "Cancelled")

            self._log(f"Flashing {step.name} ({index + 1}/{total}): {Path(step.image_path).name}", "info")
            self._update_progress(
                f"Flashing {step.name}",
                f"Flashing {step.name}",
                percent=(index / total) * 100,
                partition=step.name,
                partition_index=index + 1,
                total_partitions=total,
            )

            result, outcome = self._flash_step(profile, handle, step, request, loader, cancel_event, index, total, critical)
            report.partitions.append(result)

            if outcome is not None and outcome.cancelled:
                self._skip_remaining(report, steps[index + 1:], request)
                self._log("Partitions already flashed stay flashed; no rollback is performed", "warning")
                return self._finish(report, FlashState.CANCELLED, f"Flash cancelled while writing {step.name}", "Cancelled")

            if result.status == "failed" and critical:
                self._skip_remaining(report, steps[index + 1:], request)
                error = f"Critical partition {step.name} failed: {result.error}"
                return self._finish(report, FlashState.FAILED, error, error)

            self._update_progress(
                f"Flashed {step.name}",
                percent=((index + 1) / total) * 100,
                partition=step.name,
                partition_index=index + 1,
                total_partitions=total,
            )

        failed = report.by_status("failed")
        if failed:
            self._log(f"{len(failed)} non-critical partition(s) failed: {', '.join(failed)}", "warning")

        if self._cancelled(cancel_event):
            return self._finish(report, FlashState.CANCELLED, "Flash cancelled before reboot", "Cancelled")

        # FLASHING → REBOOTING
        if request.reboot:
            self._transition(FlashState.REBOOTING, "Rebooting", "Rebooting device...")
            report.rebooted = self._reboot(profile, handle, request, loader)
        else:
            self._log("Reboot disabled for this session", "info")

        summary = f"Flash completed: {len(report.by_status('succeeded'))}/{total} partition(s) written"
        return self._finish(report, FlashState.DONE, summary)

    def _flash_step(
        self,
        profile: VendorProfile,
        handle: ToolHandle,
        step: PlanStep,
        request: FlashRequest,
        loader: Optional[str],
        cancel_event: Optional[threading.Event],
        index: int,
        total: int,
        critical: bool,
    ):
        started = time.monotonic()
        result = PartitionResult(
            name=step.name,
            status="failed",
            role=step.role,
            image_path=step.image_path,
            critical=critical,
        )

        try:
            args = profile.build_args(
                Operation.FLASH,
                partition=step.name,
                image=step.image_path,
                port=request.device_port,
                loader=loader,
            )
        except ValueError as e:
            result.error = str(e)
            self._log(f"✗ {step.name}: {e}", "error")
            return result, None

        def on_progress(percent: int):
            self._update_progress(
                f"Flashing {step.name}",
                percent=((index + percent / 100) / total) * 100,
                partition=step.name,
                partition_index=index + 1,
                total_partitions=total,
            )

        outcome = self.runner.run(
            handle,
            args,
            timeout=request.partition_timeout or settings.FLASH_TIMEOUT_SEC,
            cancel_event=cancel_event,
            on_output_line=lambda line: self._log(line, "info") if line.strip() else None,
            on_progress=on_progress,
        )
        result.duration = time.monotonic() - started

        try:
            self._check_outcome(profile, step, outcome)
            result.status = "succeeded"
            self._log(f"✓ {step.name} flashed", "info")
        except PartitionFlashFailed as e:
            result.error = e.reason
            self._log(f"✗ {e}{' (critical)' if critical else ''}", "error")

        return result, outcome

    def _check_outcome(self, profile: VendorProfile, step: PlanStep, outcome: ProcessOutcome):
        if outcome.cancelled:
            raise PartitionFlashFailed(step.name, "Cancelled", outcome.exit_text)
        if outcome.timed_out:
            raise PartitionFlashFailed(step.name, f"Timed out after {outcome.duration:.0f}s", outcome.exit_text)
        if outcome.returncode == -1 and outcome.pid is None:
            raise PartitionFlashFailed(step.name, outcome.exit_text or "Tool could not be launched")

        verdict = profile.analyze_output(outcome.exit_text)
        if not verdict.success:
            raise PartitionFlashFailed(step.name, verdict.error or "Unknown error", outcome.exit_text)

    def _skip_remaining(self, report: FlashReport, steps: List[PlanStep], request: FlashRequest):
        for step in steps:
            report.partitions.append(PartitionResult(
                name=step.name,
                status="skipped",
                role=step.role,
                image_path=step.image_path,
                critical=request.is_critical(step),
            ))
        if steps:
            self._log(f"Skipping {len(steps)} remaining partition(s): {', '.join(s.name for s in steps)}", "warning")

    def _reboot(self, profile: VendorProfile, handle: ToolHandle, request: FlashRequest, loader: Optional[str]) -> bool:
        """Best-effort reboot. Failures are logged and never fail the session."""
        try:
            args = profile.build_args(Operation.REBOOT, port=request.device_port, loader=loader)
        except ValueError as e:
            self._log(f"Warning: Cannot reboot: {e}. Manually reboot device.", "warning")
            return False

        outcome = self.runner.run(handle, args, timeout=settings.REBOOT_TIMEOUT_SEC)
        if outcome.completed and outcome.returncode == 0 and not profile.failure_markers.search(outcome.exit_text):
            self._log("Device rebooting", "info")
            return True

        self._log("Warning: Reboot command failed, but flash succeeded. Manually reboot device.", "warning")
        return False


# Export for use in other modules
__all__ = [
    "FlashState",
    "FlashProgress",
    "FlashRequest",
    "PartitionResult",
    "FlashReport",
    "FlashOrchestrator",
    "read_partition_table",
    "backup_partition",
    "erase_partition",
    "reboot_device",
]
