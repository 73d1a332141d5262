"""
CLI Wrapper for the flashing engine

Usage:
    vendorflash flash --vendor samsung --package SM-A525F_fw.zip --wipe
    vendorflash flash --vendor qualcomm --image boot=boot.img --loader prog_firehose_ddr.elf
    vendorflash parse --vendor mediatek MT6765_Android_scatter.txt
    vendorflash read --vendor qualcomm --port /dev/ttyUSB0
    vendorflash backup --vendor mediatek boot_a boot_a.img
    vendorflash erase --vendor qualcomm frp --yes
    vendorflash reboot --vendor mediatek --mode brom
    vendorflash tools list
    vendorflash tools install edl

Or import:
    from vendorflash.cli import flash_device
    report = flash_device(FlashRequest(vendor="samsung", packages=["fw.zip"]))
"""

import argparse
import sys
import json
import threading
import logging
from pathlib import Path
from typing import List, Optional

from .config import settings
from .core.errors import VendorFlashError
from .core.logging import setup_logging
from .utils.flash_engine import (
    FlashOrchestrator,
    FlashProgress,
    FlashReport,
    FlashRequest,
    backup_partition,
    erase_partition,
    read_partition_table,
    reboot_device,
)
from .utils.process import ProcessRunner
from .utils.tools import ToolKind, ToolResolver
from .utils.vendors import PROFILES, Vendor, get_profile, parse_partition_table

logger = logging.getLogger(__name__)


def progress_callback(progress: FlashProgress):
    """Callback for progress updates"""
    if progress.partition and progress.partition_index and progress.total_partitions:
        partition_info = f" ({progress.partition_index}/{progress.total_partitions})"
    else:
        partition_info = ""

    print(f"[{progress.state.value:14}] [{progress.progress_percent:5.1f}%] {progress.step_name}{partition_info}")


def log_callback(message: str, level: str = "info"):
    """Callback for log messages"""
    level_upper = level.upper()
    if level_upper == "ERROR":
        print(f"❌ {message}", file=sys.stderr)
    elif level_upper == "WARNING":
        print(f"⚠️  {message}")
    else:
        print(f"   {message}")


def flash_device(request: FlashRequest, orchestrator: Optional[FlashOrchestrator] = None) -> FlashReport:
    """
    Run a flashing session in the foreground.

    The session runs on a worker thread so Ctrl+C can set the cancel signal;
    the runner then kills the in-flight tool and the session ends CANCELLED.
    """
    orchestrator = orchestrator or FlashOrchestrator()
    orchestrator.set_callbacks(on_progress=progress_callback, on_log=log_callback)
    cancel_event = threading.Event()
    result: List[FlashReport] = []

    worker = threading.Thread(
        target=lambda: result.append(orchestrator.execute(request, cancel_event=cancel_event)),
        name="flash-session",
        daemon=True,
    )

    print(f"Starting {request.vendor.value} flash ({request.transport_key})")
    print("-" * 60)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(timeout=0.5)
        except KeyboardInterrupt:
            if not cancel_event.is_set():
                print("\nCancelling... (already-flashed partitions stay flashed)")
                cancel_event.set()
    print("-" * 60)

    report = result[0]
    for partition in report.partitions:
        marker = {"succeeded": "✓", "failed": "✗", "skipped": "-"}.get(partition.status, "?")
        line = f"  {marker} {partition.name:20} {partition.status}"
        if partition.error:
            line += f"  ({partition.error})"
        print(line)

    if report.success:
        print("✅ Flash completed successfully!")
    else:
        print(f"❌ Flash {report.status}: {report.error or 'Unknown error'}")
    return report


def _parse_image_args(values: Optional[List[str]]) -> dict:
    images = {}
    for value in values or []:
        if "=" not in value:
            raise argparse.ArgumentTypeError(f"Expected PARTITION=IMAGE, got {value!r}")
        name, path = value.split("=", 1)
        images[name.strip()] = path.strip()
    return images


def _print_table(table, as_json: bool):
    if as_json:
        print(json.dumps([entry.to_dict() for entry in table], indent=2))
        return
    print(f"{table.source}: {len(table)} partition(s)")
    for entry in table:
        print(f"  {entry.name:24} offset=0x{entry.start_offset:010x} size={entry.size_bytes:>14}  {entry.vendor_tag}")


def cmd_flash(args) -> int:
    try:
        images = _parse_image_args(args.image)
    except argparse.ArgumentTypeError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2

    scatter_fallback = args.vendor == Vendor.MEDIATEK.value and args.chipset
    if not args.package and not images and not scatter_fallback:
        print("❌ Provide at least one --package or --image (or --chipset for MediaTek)", file=sys.stderr)
        return 2

    request = FlashRequest(
        vendor=args.vendor,
        packages=args.package or [],
        images=images,
        preserve_user_data=not args.wipe,
        critical_partitions=args.critical or [],
        partitions=args.only,
        device_port=args.port,
        loader=args.loader,
        chipset=args.chipset,
        use_device_table=args.use_device_table,
        reboot=not args.no_reboot,
        partition_timeout=args.timeout,
    )
    report = flash_device(request)
    return 0 if report.success else 1


def cmd_parse(args) -> int:
    raw_text = Path(args.file).read_text(encoding="utf-8", errors="replace")
    table = parse_partition_table(args.vendor, raw_text)
    if not table:
        print(f"❌ No partitions found in {args.file}", file=sys.stderr)
        return 1
    _print_table(table, args.json)
    return 0


def cmd_read(args) -> int:
    resolver = ToolResolver()
    try:
        handle = resolver.ensure(get_profile(args.vendor).tool)
        table = read_partition_table(
            args.vendor, handle, ProcessRunner(), port=args.port, loader=args.loader, timeout=args.timeout,
        ).raise_if_empty()
    except VendorFlashError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    _print_table(table, args.json)
    return 0


def _run_on_device(args, action) -> int:
    """Resolve the vendor tool and run one device operation, printing any failure"""
    try:
        handle = ToolResolver().ensure(get_profile(args.vendor).tool)
        action(handle, ProcessRunner())
    except (VendorFlashError, ValueError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    return 0


def cmd_backup(args) -> int:
    def action(handle, runner):
        path = backup_partition(
            args.vendor, handle, runner, args.partition, args.output,
            port=args.port, loader=args.loader, timeout=args.timeout,
        )
        print(f"✅ {args.partition} saved to {path} ({path.stat().st_size} bytes)")

    return _run_on_device(args, action)


def cmd_erase(args) -> int:
    if not args.yes:
        print(f"❌ Erasing {args.partition} destroys its contents; pass --yes to confirm", file=sys.stderr)
        return 2

    def action(handle, runner):
        erase_partition(
            args.vendor, handle, runner, args.partition,
            port=args.port, loader=args.loader, timeout=args.timeout,
        )
        print(f"✅ Erased {args.partition}")

    return _run_on_device(args, action)


def cmd_reboot(args) -> int:
    def action(handle, runner):
        reboot_device(args.vendor, handle, runner, mode=args.mode, port=args.port, loader=args.loader)
        print(f"✅ Device rebooting to {args.mode if args.mode != 'normal' else 'system'}")

    return _run_on_device(args, action)


def cmd_tools(args) -> int:
    resolver = ToolResolver()
    if args.tools_command == "install":
        try:
            handle = resolver.ensure(args.kind)
        except VendorFlashError as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1
        print(f"✅ {args.kind} available at {handle.path}")
        return 0

    for tool in resolver.status():
        state = f"installed at {tool['path']}" if tool["installed"] else "not installed"
        print(f"  {tool['kind']:10} {tool['name']:30} {state}")
        if tool["error"]:
            print(f"             ⚠️  {tool['error']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    vendors = [v.value for v in Vendor]

    parser = argparse.ArgumentParser(
        prog="vendorflash",
        description="Flash firmware to Samsung, Qualcomm and MediaTek devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Flash an Odin package, keeping user data (HOME_CSC)
  vendorflash flash --vendor samsung --package SM-A525F_fw.zip

  # Flash an Odin package and wipe user data (CSC)
  vendorflash flash --vendor samsung --package SM-A525F_fw.zip --wipe

  # Flash single partitions over EDL with an explicit programmer
  vendorflash flash --vendor qualcomm --image boot=boot.img --image recovery=twrp.img \\
    --loader prog_firehose_ddr.elf --port /dev/ttyUSB0
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    flash = subparsers.add_parser("flash", help="Flash firmware packages or images")
    flash.add_argument("--vendor", required=True, choices=vendors)
    flash.add_argument("--package", action="append", help="Firmware package (zip, tar, tar.md5, scatter file); repeatable")
    flash.add_argument("--image", action="append", metavar="PARTITION=IMAGE", help="Explicit partition image; repeatable")
    flash.add_argument("--wipe", action="store_true", help="Wipe user data (flash CSC instead of HOME_CSC)")
    flash.add_argument("--critical", action="append", metavar="PARTITION", help="Fail the session if this partition fails")
    flash.add_argument("--only", action="append", metavar="PARTITION", help="Only flash these partitions")
    flash.add_argument("--port", help="Device port (COM port or USB path)")
    flash.add_argument("--loader", help="Firehose programmer (Qualcomm)")
    flash.add_argument("--chipset", help="Chipset used to look up a loader (e.g. SM8250)")
    flash.add_argument("--use-device-table", action="store_true", help="Match images against the device partition table")
    flash.add_argument("--no-reboot", action="store_true", help="Leave the device in download mode")
    flash.add_argument("--timeout", type=int, help=f"Per-partition timeout in seconds (default: {settings.FLASH_TIMEOUT_SEC})")
    flash.set_defaults(func=cmd_flash)

    parse = subparsers.add_parser("parse", help="Parse a captured partition table or scatter file")
    parse.add_argument("--vendor", required=True, choices=vendors)
    parse.add_argument("file")
    parse.add_argument("--json", action="store_true")
    parse.set_defaults(func=cmd_parse)

    read = subparsers.add_parser("read", help="Read the partition table from a connected device")
    read.add_argument("--vendor", required=True, choices=vendors)
    read.add_argument("--port")
    read.add_argument("--loader")
    read.add_argument("--timeout", type=int)
    read.add_argument("--json", action="store_true")
    read.set_defaults(func=cmd_read)

    backup = subparsers.add_parser("backup", help="Read one partition from the device into a file")
    backup.add_argument("--vendor", required=True, choices=vendors)
    backup.add_argument("partition")
    backup.add_argument("output")
    backup.add_argument("--port")
    backup.add_argument("--loader")
    backup.add_argument("--timeout", type=int)
    backup.set_defaults(func=cmd_backup)

    erase = subparsers.add_parser("erase", help="Erase one partition on the device")
    erase.add_argument("--vendor", required=True, choices=vendors)
    erase.add_argument("partition")
    erase.add_argument("--port")
    erase.add_argument("--loader")
    erase.add_argument("--timeout", type=int)
    erase.add_argument("--yes", action="store_true", help="Confirm the erase")
    erase.set_defaults(func=cmd_erase)

    reboot_modes = sorted({mode for profile in PROFILES.values() for mode in profile.reboot_modes})
    reboot = subparsers.add_parser("reboot", help="Reboot the device to the system or a vendor boot mode")
    reboot.add_argument("--vendor", required=True, choices=vendors)
    reboot.add_argument("--mode", default="normal", choices=["normal", *reboot_modes])
    reboot.add_argument("--port")
    reboot.add_argument("--loader")
    reboot.set_defaults(func=cmd_reboot)

    tools = subparsers.add_parser("tools", help="List or install vendor tools")
    tools_sub = tools.add_subparsers(dest="tools_command", required=True)
    tools_sub.add_parser("list")
    install = tools_sub.add_parser("install")
    install.add_argument("kind", choices=[k.value for k in ToolKind])
    tools.set_defaults(func=cmd_tools)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
