from pathlib import Path
import pytest

from vendorflash.core.errors import PlanInvariantViolation
from vendorflash.utils.firmware import ExtractedImage
from vendorflash.utils.flash_plan import FlashPlan, PlanStep, apply_preservation_policy, build_plan
from vendorflash.utils.partitions import PartitionEntry, PartitionTable
from vendorflash.utils.vendors import Vendor, get_profile


def make_image(hint, role=None, file_name=None):
    return ExtractedImage(hint, Path("/scratch") / (role or "raw") / (file_name or f"{hint}.img"), role)


def odin_images():
    return [
        make_image("sboot", "BL", "sboot.bin"),
        make_image("boot", "AP"),
        make_image("system", "AP"),
        make_image("modem", "CP", "modem.bin"),
        make_image("cache", "CSC"),
        make_image("cache", "HOME_CSC"),
    ]


def test_preserving_data_drops_csc():
    kept = apply_preservation_policy(odin_images(), preserve_user_data=True)
    roles = [image.role for image in kept]
    assert "CSC" not in roles
    assert "HOME_CSC" in roles


def test_wiping_data_drops_home_csc():
    kept = apply_preservation_policy(odin_images(), preserve_user_data=False)
    roles = [image.role for image in kept]
    assert "HOME_CSC" not in roles
    assert "CSC" in roles


def test_samsung_plan_upper_cases_hints():
    plan = build_plan(odin_images(), get_profile(Vendor.SAMSUNG), preserve_user_data=True)
    assert plan.partition_names == ["SBOOT", "BOOT", "SYSTEM", "MODEM", "CACHE"]
    assert plan.steps[-1].role == "HOME_CSC"
    assert plan.steps[0].entry.source_image_path == str(Path("/scratch/BL/sboot.bin"))


def test_qualcomm_plan_keeps_hint_spelling():
    images = [make_image("boot_a"), make_image("modem_a", file_name="modem_a.bin")]
    plan = build_plan(images, get_profile(Vendor.QUALCOMM))
    assert plan.partition_names == ["boot_a", "modem_a"]
    assert all(step.role is None for step in plan)


def test_duplicate_partition_is_rejected():
    images = [make_image("boot"), make_image("BOOT", "AP")]
    with pytest.raises(PlanInvariantViolation, match="appears twice"):
        build_plan(images, get_profile(Vendor.QUALCOMM))


def test_both_csc_variants_are_rejected():
    plan_images = [make_image("cache", "CSC"), make_image("hidden", "HOME_CSC")]
    plan = build_plan(plan_images, get_profile(Vendor.SAMSUNG), preserve_user_data=True)
    assert [step.role for step in plan] == ["HOME_CSC"]

    # Only reachable when a caller bypasses the preservation policy
    steps = [
        PlanStep(PartitionEntry("CACHE"), "/a/cache.img", "CSC"),
        PlanStep(PartitionEntry("HIDDEN"), "/b/hidden.img", "HOME_CSC"),
    ]
    with pytest.raises(PlanInvariantViolation, match="CSC and HOME_CSC"):
        FlashPlan(steps).validate()


def test_plan_matches_device_table():
    table = PartitionTable("Samsung PIT", [
        PartitionEntry("BOOTLOADER", 0, 4096, flash_filename="sboot.bin"),
        PartitionEntry("BOOT", 4096, 8192, flash_filename="boot.img"),
        PartitionEntry("RADIO", 12288, 4096, flash_filename="modem.bin"),
    ])
    images = [
        make_image("sboot", "BL", "sboot.bin"),
        make_image("boot", "AP"),
        make_image("modem", "CP", "modem.bin"),
        make_image("userdata", "AP"),
    ]

    plan = build_plan(images, get_profile(Vendor.SAMSUNG), table=table)
    # matched by name, then by the table's file name; userdata has no partition
    assert plan.partition_names == ["BOOTLOADER", "BOOT", "RADIO"]
    assert plan.steps[0].entry.size_bytes == 4096
    assert plan.steps[2].entry.source_image_path == str(Path("/scratch/CP/modem.bin"))


def test_plan_table_keeps_device_spelling():
    table = PartitionTable("Qualcomm GPT", [PartitionEntry("boot_a", 393216 * 512, 131072 * 512)])
    plan = build_plan([make_image("BOOT_A")], get_profile(Vendor.QUALCOMM), table=table)
    assert plan.partition_names == ["boot_a"]
    assert plan.steps[0].entry.start_offset == 393216 * 512


def test_only_filter_selects_partitions():
    plan = build_plan(odin_images(), get_profile(Vendor.SAMSUNG), only=["boot", "Modem"])
    assert plan.partition_names == ["BOOT", "MODEM"]


def test_plan_to_dict():
    plan = build_plan([make_image("boot_a")], get_profile(Vendor.QUALCOMM), preserve_user_data=False)
    assert plan.to_dict() == {
        "preserve_user_data": False,
        "steps": [{"partition": "boot_a", "image": str(Path("/scratch/raw/boot_a.img")), "role": None}],
    }
