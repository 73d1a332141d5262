import json

import pytest

from fakes import FakeResolver, FakeRunner, make_handle, writing_response
from vendorflash import cli
from vendorflash.cli import build_parser, flash_device, main
from vendorflash.utils.flash_engine import FlashOrchestrator, FlashRequest
from vendorflash.utils.loaders import LoaderStore

SCATTER = """- partition_index: SYS0
  partition_name: preloader
  file_name: preloader.bin
  is_download: true
  linear_start_addr: 0x0
  partition_size: 0x40000
- partition_index: SYS1
  partition_name: boot
  file_name: boot.img
  is_download: true
  linear_start_addr: 0x2000000
  partition_size: 0x2000000
"""


def test_parse_scatter_file(tmp_path, capsys):
    scatter = tmp_path / "MT6765_Android_scatter.txt"
    scatter.write_text(SCATTER)

    assert main(["parse", "--vendor", "mediatek", "--json", str(scatter)]) == 0
    entries = json.loads(capsys.readouterr().out)
    assert [e["name"] for e in entries] == ["preloader", "boot"]
    assert entries[1]["start_offset"] == 0x2000000


def test_parse_garbage_fails(tmp_path, capsys):
    capture = tmp_path / "pit.txt"
    capture.write_text("ERROR: Failed to detect compatible download-mode device.")

    assert main(["parse", "--vendor", "samsung", str(capture)]) == 1
    assert "No partitions found" in capsys.readouterr().err


def test_flash_requires_firmware(capsys):
    assert main(["flash", "--vendor", "qualcomm"]) == 2
    assert main(["flash", "--vendor", "qualcomm", "--image", "boot.img"]) == 2


def test_flash_arguments():
    args = build_parser().parse_args([
        "flash", "--vendor", "samsung", "--package", "a.zip", "--package", "b.tar.md5",
        "--wipe", "--only", "BOOT", "--no-reboot", "--timeout", "600",
    ])
    assert args.package == ["a.zip", "b.tar.md5"]
    assert args.wipe and args.no_reboot
    assert args.only == ["BOOT"]
    assert args.timeout == 600


def test_flash_device_prints_summary(tmp_path, capsys):
    image = tmp_path / "boot_a.img"
    image.write_bytes(b"boot")
    orchestrator = FlashOrchestrator(
        resolver=FakeResolver(),
        runner=FakeRunner(),
        loader_store=LoaderStore(tmp_path / "loaders"),
        scratch_root=tmp_path / "scratch",
    )

    report = flash_device(FlashRequest(vendor="qualcomm", images={"boot_a": str(image)}), orchestrator)

    assert report.success
    out = capsys.readouterr().out
    assert "✓ boot_a" in out
    assert "Flash completed successfully" in out


@pytest.fixture
def device(monkeypatch):
    """Replace the tool resolver and process runner the device subcommands construct"""
    runner = FakeRunner()
    monkeypatch.setattr(cli, "ToolResolver", lambda: FakeResolver(make_handle()))
    monkeypatch.setattr(cli, "ProcessRunner", lambda: runner)
    return runner


def test_backup_command(device, tmp_path, capsys):
    device.responses["r"] = writing_response(b"nvram")
    output = tmp_path / "nvram.bin"

    assert main(["backup", "--vendor", "mediatek", "nvram", str(output)]) == 0
    assert output.read_bytes() == b"nvram"
    assert "saved to" in capsys.readouterr().out


def test_backup_unsupported_vendor(device, tmp_path, capsys):
    assert main(["backup", "--vendor", "samsung", "BOOT", str(tmp_path / "boot.img")]) == 1
    assert "does not support backup" in capsys.readouterr().err
    assert device.calls == []


def test_erase_needs_confirmation(device, capsys):
    assert main(["erase", "--vendor", "qualcomm", "frp"]) == 2
    assert device.calls == []

    assert main(["erase", "--vendor", "qualcomm", "frp", "--port", "COM5", "--yes"]) == 0
    assert device.calls == [["--port=COM5", "e", "frp"]]


def test_reboot_command(device, capsys):
    assert main(["reboot", "--vendor", "mediatek", "--mode", "brom"]) == 0
    assert device.calls == [["reset", "brom"]]
    assert "rebooting to brom" in capsys.readouterr().out

    assert main(["reboot", "--vendor", "qualcomm", "--mode", "fastboot"]) == 1
    assert "cannot reboot to fastboot" in capsys.readouterr().err


def test_flash_mediatek_by_chipset_is_accepted():
    args = build_parser().parse_args(["flash", "--vendor", "mediatek", "--chipset", "MT6765"])
    assert args.chipset == "MT6765"
    assert main(["flash", "--vendor", "qualcomm", "--chipset", "SM8250"]) == 2
