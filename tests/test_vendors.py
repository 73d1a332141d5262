import pytest

from vendorflash.utils.tools import ToolKind
from vendorflash.utils.vendors import PROFILES, Operation, Vendor, get_profile

HEIMDALL_SUCCESS = """
Initialising protocol...
Protocol initialisation successful.
Uploading BOOT
100%
BOOT upload successful
"""

HEIMDALL_FAILURE = """
Uploading BOOT
ERROR: Failed to send file part packet!
ERROR: BOOT upload failed!
"""

EDL_SUCCESS = """
Progress: |##########| 100.0% Write (Sector 0x20000 of 0x20000, 64.00 MB/s)
Wrote boot.img to sector 393216.
"""

EDL_FAILURE = """
firehose - [LIB]: Writing to physical partition 0, sector 393216, sectors 131072
firehose - Error: FAILED to write boot
"""


def test_samsung_flash_template():
    args = PROFILES[Vendor.SAMSUNG].build_args(Operation.FLASH, partition="BOOT", image="/fw/boot.img")
    assert args == ["flash", "--BOOT", "/fw/boot.img", "--no-reboot"]


def test_samsung_print_and_reboot_templates():
    profile = get_profile("samsung")
    assert profile.build_args(Operation.PRINT_TABLE) == ["print-pit", "--no-reboot"]
    assert profile.build_args(Operation.REBOOT) == ["print-pit"]


def test_samsung_has_no_erase():
    with pytest.raises(ValueError):
        get_profile(Vendor.SAMSUNG).build_args(Operation.ERASE, partition="BOOT")


def test_qualcomm_prefixes_loader_and_port():
    args = get_profile(Vendor.QUALCOMM).build_args(
        Operation.FLASH, partition="boot_a", image="boot.img", port="/dev/ttyUSB0", loader="prog_firehose_ddr.elf",
    )
    assert args == ["--loader=prog_firehose_ddr.elf", "--port=/dev/ttyUSB0", "w", "boot_a", "boot.img"]


def test_qualcomm_erase_and_reset():
    profile = get_profile(Vendor.QUALCOMM)
    assert profile.build_args(Operation.ERASE, partition="userdata") == ["e", "userdata"]
    assert profile.build_args(Operation.REBOOT) == ["reset"]


def test_mediatek_ignores_port_and_loader():
    args = get_profile(Vendor.MEDIATEK).build_args(
        Operation.FLASH, partition="boot", image="boot.img", port="COM5", loader="da.bin",
    )
    assert args == ["w", "boot", "boot.img"]


def test_flash_requires_image():
    with pytest.raises(ValueError):
        get_profile(Vendor.QUALCOMM).build_args(Operation.FLASH, partition="boot")


def test_profiles_map_to_tools():
    assert get_profile("samsung").tool == ToolKind.HEIMDALL
    assert get_profile("qualcomm").tool == ToolKind.EDL
    assert get_profile("mediatek").tool == ToolKind.MTKCLIENT


def test_samsung_hints_are_upper_cased():
    assert get_profile("samsung").normalize_hint("boot") == "BOOT"
    assert get_profile("qualcomm").normalize_hint("boot_a") == "boot_a"


def test_analyze_output_heimdall_success():
    verdict = get_profile("samsung").analyze_output(HEIMDALL_SUCCESS)
    assert verdict.success is True
    assert verdict.error is None


def test_analyze_output_heimdall_failure():
    verdict = get_profile("samsung").analyze_output(HEIMDALL_FAILURE)
    assert verdict.success is False
    assert "Failed to send file part packet" in verdict.error


def test_analyze_output_edl_success():
    assert get_profile("qualcomm").analyze_output(EDL_SUCCESS).success is True


def test_analyze_output_failure_marker_wins():
    verdict = get_profile("qualcomm").analyze_output(EDL_FAILURE + "\nDone")
    assert verdict.success is False
    assert "FAILED to write boot" in verdict.error


def test_analyze_output_without_marker_is_failure():
    verdict = get_profile("mediatek").analyze_output("Waiting for device...")
    assert verdict.success is False
    assert "Waiting for device" in verdict.error

    assert get_profile("mediatek").analyze_output("").success is False


def test_backup_reads_into_output():
    args = get_profile(Vendor.QUALCOMM).build_args(
        Operation.BACKUP, partition="boot_a", output="/backups/boot_a.img", port="/dev/ttyUSB0",
    )
    assert args == ["--port=/dev/ttyUSB0", "r", "boot_a", "/backups/boot_a.img"]
    assert get_profile(Vendor.MEDIATEK).build_args(Operation.BACKUP, partition="nvram", output="nvram.bin") == [
        "r", "nvram", "nvram.bin",
    ]


def test_backup_requires_output_and_samsung_has_none():
    with pytest.raises(ValueError, match="output"):
        get_profile(Vendor.MEDIATEK).build_args(Operation.BACKUP, partition="boot")
    with pytest.raises(ValueError):
        get_profile(Vendor.SAMSUNG).build_args(Operation.BACKUP, partition="BOOT", output="boot.img")


def test_reboot_modes():
    assert get_profile(Vendor.QUALCOMM).build_args(Operation.REBOOT, mode="edl") == ["reset", "edl"]
    assert get_profile(Vendor.MEDIATEK).build_args(Operation.REBOOT, mode="brom") == ["reset", "brom"]
    assert get_profile(Vendor.MEDIATEK).build_args(Operation.REBOOT, mode="normal") == ["reset"]

    with pytest.raises(ValueError, match="cannot reboot to brom"):
        get_profile(Vendor.QUALCOMM).build_args(Operation.REBOOT, mode="brom")
    with pytest.raises(ValueError, match="supported: normal"):
        get_profile(Vendor.SAMSUNG).build_args(Operation.REBOOT, mode="recovery")
