"""Error taxonomy for partition parsing, tool provisioning, process supervision and flashing"""

from typing import Optional


class VendorFlashError(Exception):
    """Base class for all flashing-service errors"""
    pass


class PartitionTableEmpty(VendorFlashError):
    """A partition table capture contained no entries"""

    def __init__(self, source: str = "partition table"):
        self.source = source
        super().__init__(f"No partitions found in {source}")


class ToolNotInstalled(VendorFlashError):
    """A vendor tool (or the runtime it needs) could not be located"""
    pass


class ToolInstallFailed(VendorFlashError):
    """Downloading or unpacking a vendor tool failed from every source"""
    pass


class ProcessTimedOut(VendorFlashError):
    """An external tool exceeded its wall-clock timeout and was killed"""
    pass


class ProcessCancelled(VendorFlashError):
    """An external tool was killed because the session was cancelled"""
    pass


class PartitionFlashFailed(VendorFlashError):
    """Flashing a single partition failed"""

    def __init__(self, partition: str, reason: str, output: Optional[str] = None):
        self.partition = partition
        self.reason = reason
        self.output = output or ""
        super().__init__(f"Failed to flash {partition}: {reason}")


class PlanInvariantViolation(VendorFlashError):
    """A flash plan is internally inconsistent (duplicate partitions, CSC with HOME_CSC)"""
    pass


class DeviceCommandFailed(VendorFlashError):
    """A one-shot device operation (backup, erase, reboot) did not succeed"""

    def __init__(self, operation: str, reason: str, output: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        self.output = output or ""
        super().__init__(f"{operation} failed: {reason}")
