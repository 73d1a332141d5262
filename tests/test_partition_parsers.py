import pytest

from vendorflash.core.errors import PartitionTableEmpty
from vendorflash.utils.partitions import (
    PartitionEntry,
    is_download_entry,
    parse_gpt,
    parse_mtk_gpt,
    parse_pit,
    parse_scatter,
)
from vendorflash.utils.vendors import Vendor, parse_partition_table

# Sample outputs (trimmed to essentials)
PIT_OUTPUT = """Heimdall v1.4.2

Copyright (c) 2010-2017 Benjamin Dobell, Glass Echidna

Initialising connection...
Detecting device...
Claiming interface...
Beginning session...
Entry Count: 3
Unknown 1: 1598902083

--- Entry #0 ---
Binary Type: 0 (AP)
Device Type: 2 (MMC)
Identifier: 80
Attributes: 5 (Read/Write)
Update Attributes: 1 (FOTA)
Partition Block Size/Offset: 34
Partition Block Count: 8192
File Offset (Obsolete): 0
File Size (Obsolete): 0
Partition Name: BOOTLOADER
Flash Filename: sboot.bin
FOTA Filename:

--- Entry #1 ---
Binary Type: 0 (AP)
Device Type: 2 (MMC)
Identifier: 5
Partition Block Size/Offset: 61440
Partition Block Count: 131072
Some Future Field: 7
Partition Name: BOOT
Flash Filename: boot.img

--- Entry #2 ---
Binary Type: 0 (AP)
Partition Block Size/Offset: 0
Partition Block Count: 0
Partition Name:
Flash Filename:

Ending session...
Releasing device interface...
"""

OLD_PIT_OUTPUT = """--- Entry #0 ---
Block Size/Offset: 10
Block Count: 20
Partition Name: RECOVERY
"""

GPT_DUMP = """
Parsing Lun 0:
Name                 Start      Count      Size
modem                131072     229376     112.0 MB
boot_a               393216     131072     64.0 MB
userdata             1048576    99999999   47.6 GB
Total disk size: 0x1dc0000000
"""

SCATTER = """############################################################################################################
#
#  General Setting
#
############################################################################################################
- general: MTK_PLATFORM_CFG
  info:
    - config_version: V1.1.2
      platform: MT6765
############################################################################################################
#
#  Layout Setting
#
############################################################################################################
- partition_index: SYS0
  partition_name: preloader
  file_name: preloader_k62v1.bin
  is_download: true
  type: SV5_BL_BIN
  linear_start_addr: 0x0
  physical_start_addr: 0x0
  partition_size: 0x40000
  region: EMMC_BOOT1_BOOT2
- partition_index: SYS1
  partition_name: pgpt
  file_name: NONE
  is_download: false
  type: NORMAL_ROM
  linear_start_addr: 0x0
  partition_size: 0x8000
  region: EMMC_USER
- partition_index: SYS2
  partition_name: boot
  file_name: boot.img
  is_download: true
  type: NORMAL_ROM
  linear_start_addr: 0x2000000
  partition_size: 33554432
  region: EMMC_USER
"""

MTK_PRINTGPT = """
Preloader - Status: Waiting for PreLoader VCOM, please connect mobile
GPT Table:
-------------
proinfo              0x00008000 0x00300000 (3.0 MB)
boot_a               0x02000000 0x02000000 (32.0 MB)
garbage line without numbers
"""


def test_parse_pit_reads_labelled_fields():
    table = parse_pit(PIT_OUTPUT)
    assert table.names == ["BOOTLOADER", "BOOT"]

    bootloader = table[0]
    assert bootloader.start_offset == 34 * 512
    assert bootloader.size_bytes == 8192 * 512
    assert bootloader.flash_filename == "sboot.bin"
    assert "flash_filename=sboot.bin" in bootloader.vendor_tag


def test_parse_pit_discards_blocks_without_name():
    table = parse_pit(PIT_OUTPUT)
    assert len(table) == 2


def test_parse_pit_accepts_older_labels():
    table = parse_pit(OLD_PIT_OUTPUT)
    assert table.names == ["RECOVERY"]
    assert table[0].start_offset == 10 * 512
    assert table[0].size_bytes == 20 * 512


def test_parse_pit_custom_sector_size():
    table = parse_pit(OLD_PIT_OUTPUT, sector_size=4096)
    assert table[0].size_bytes == 20 * 4096


def test_parse_gpt_converts_sectors_to_bytes():
    table = parse_gpt(GPT_DUMP)
    assert table.names == ["modem", "boot_a", "userdata"]
    modem = table.find("MODEM")
    assert modem.start_offset == 131072 * 512
    assert modem.size_bytes == 229376 * 512
    assert modem.vendor_tag == "size=112.0 MB"


def test_parse_gpt_keeps_first_duplicate():
    dump = "boot 10 20 10.0 KB\nboot 30 40 20.0 KB\n"
    table = parse_gpt(dump)
    assert len(table) == 1
    assert table[0].start_offset == 10 * 512


def test_parse_scatter_flushes_last_entry():
    table = parse_scatter(SCATTER)
    assert table.names == ["preloader", "pgpt", "boot"]
    assert table[-1].name == "boot"


def test_parse_scatter_reads_hex_and_decimal():
    table = parse_scatter(SCATTER)
    assert table.find("preloader").size_bytes == 0x40000
    boot = table.find("boot")
    assert boot.start_offset == 0x2000000
    assert boot.size_bytes == 33554432


def test_parse_scatter_tags_download_flag():
    table = parse_scatter(SCATTER)
    preloader = table.find("preloader")
    assert is_download_entry(preloader)
    assert "region=EMMC_BOOT1_BOOT2" in preloader.vendor_tag
    assert not is_download_entry(table.find("pgpt"))
    assert table.find("pgpt").flash_filename is None


def test_parse_mtk_printgpt():
    table = parse_mtk_gpt(MTK_PRINTGPT)
    assert table.names == ["proinfo", "boot_a"]
    assert table[1].start_offset == 0x02000000
    assert table[1].size_bytes == 0x02000000


@pytest.mark.parametrize("parser", [parse_pit, parse_gpt, parse_scatter, parse_mtk_gpt])
def test_parsers_return_empty_table_for_garbage(parser):
    table = parser("nothing useful here\n\x00\x01 random: text")
    assert len(table) == 0
    assert not table
    with pytest.raises(PartitionTableEmpty):
        table.raise_if_empty()


def test_parse_partition_table_dispatches_by_vendor():
    assert parse_partition_table(Vendor.SAMSUNG, PIT_OUTPUT).names == ["BOOTLOADER", "BOOT"]
    assert parse_partition_table("qualcomm", GPT_DUMP).source == "Qualcomm GPT"
    assert parse_partition_table("mediatek", SCATTER).source == "MediaTek scatter"
    assert parse_partition_table("mediatek", MTK_PRINTGPT).source == "MediaTek GPT"


def test_parse_partition_table_rejects_unknown_vendor():
    with pytest.raises(ValueError):
        parse_partition_table("nokia", GPT_DUMP)


def test_partition_entry_key_and_binding():
    entry = PartitionEntry(name="boot_a", size_bytes=1024)
    bound = entry.bind_image("/tmp/boot.img")
    assert entry.key == "BOOT_A"
    assert entry.source_image_path is None
    assert bound.source_image_path == "/tmp/boot.img"
    assert bound.name == "boot_a"
