# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for guest config parsing and rewriting helpers."""
from __future__ import annotations

import pytest

from kvmigrate.env.guest_config import (
    IdMap,
    drive_lookup,
    foreach_drive,
    foreach_volid,
    format_size,
    get_current_memory,
    map_bridges,
    parse_drive,
    parse_net,
    parse_size,
    print_drive,
    update_volume_ids,
)


@pytest.mark.unit
class TestIdMap:
    def test_entries_and_default(self):
        m = IdMap.parse("local-lvm:fast, local:slow,nfs")
        assert m.map("local-lvm") == "fast"
        assert m.map("local") == "slow"
        assert m.map("other") == "nfs"
        assert bool(m)

    def test_identity_without_default(self):
        m = IdMap.parse(None)
        assert m.map("local") == "local"
        assert not m

    @pytest.mark.parametrize(
        "spec,message",
        [
            ("a:b,a:c", "duplicate mapping for 'a'"),
            ("x,y", "multiple default mappings"),
            (":b", "invalid mapping entry"),
        ],
    )
    def test_invalid(self, spec, message):
        with pytest.raises(ValueError, match=message):
            IdMap.parse(spec)


class TestSizes:
    @pytest.mark.parametrize(
        "text,value",
        [("32G", 32 << 30), ("512M", 512 << 20), ("1.5K", 1536), ("4096", 4096), (None, None), ("lots", None)],
    )
    def test_parse_size(self, text, value):
        assert parse_size(text) == value

    @pytest.mark.parametrize("value,text", [(32 << 30, "32G"), (1 << 40, "1T"), (1536, "1536"), (3 << 20, "3M")])
    def test_format_size(self, value, text):
        assert format_size(value) == text


class TestDrives:
    def test_parse_and_print(self):
        drive = parse_drive("scsi0", "local:100/vm-100-disk-0.qcow2,size=32G,format=qcow2")
        assert drive == {
            "file": "local:100/vm-100-disk-0.qcow2",
            "size": "32G",
            "format": "qcow2",
            "interface": "scsi",
            "key": "scsi0",
        }
        assert print_drive(drive) == "local:100/vm-100-disk-0.qcow2,size=32G,format=qcow2"

    def test_file_option(self):
        assert parse_drive("ide2", "file=none,media=cdrom")["file"] == "none"

    def test_malformed(self):
        assert parse_drive("scsi0", "") is None
        assert parse_drive("scsi0", "a,b") is None
        assert parse_drive("scsi0", "size=4G") is None

    def test_foreach_drive_skips_unused(self):
        conf = {"scsi0": "local:100/vm-100-disk-0.raw", "unused0": "local:100/vm-100-disk-1.raw", "name": "web"}
        assert [k for k, _ in foreach_drive(conf)] == ["scsi0"]

    def test_drive_lookup(self):
        conf = {"scsi0": "local:100/vm-100-disk-0.raw", "ide2": "none,media=cdrom"}
        key, _ = drive_lookup(conf, lambda k, d: d.get("media") == "cdrom")
        assert key == "ide2"
        assert drive_lookup(conf, lambda k, d: False) is None

    def test_property_string_default_key(self):
        assert parse_net("spice,usb3=1", "host") == {"host": "spice", "usb3": "1"}
        assert parse_net("host=1-2,usb3=1", "host") == {"host": "1-2", "usb3": "1"}
        assert parse_net("spice,usb3=1") == {"usb3": "1"}


class TestForeachVolid:
    def test_reference_attributes(self):
        conf = {
            "scsi0": "local:100/vm-100-disk-0.raw,size=4G",
            "unused0": "local:100/vm-100-disk-1.raw",
            "ide2": "local:iso/debian.iso,media=cdrom",
            "tpmstate0": "local:100/vm-100-disk-2.raw,size=4M",
            "pending": {"scsi1": "local:100/vm-100-disk-3.raw"},
            "snapshots": {
                "before-upgrade": {
                    "scsi0": "local:100/vm-100-disk-0.raw",
                    "vmstate": "local:100/vm-100-state-before-upgrade.raw",
                }
            },
        }
        vols = foreach_volid(conf)

        disk0 = vols["local:100/vm-100-disk-0.raw"]
        assert disk0.is_attached and not disk0.cdrom
        assert disk0.referenced_in_snapshot == {"before-upgrade"}
        assert disk0.size == 4 << 30
        assert disk0.drivename == "scsi0"

        assert vols["local:100/vm-100-disk-1.raw"].is_unused
        assert not vols["local:100/vm-100-disk-1.raw"].is_attached
        assert vols["local:iso/debian.iso"].cdrom
        assert vols["local:100/vm-100-disk-2.raw"].is_tpmstate
        assert vols["local:100/vm-100-disk-3.raw"].referenced_in_pending
        assert not vols["local:100/vm-100-disk-3.raw"].is_attached
        assert vols["local:100/vm-100-state-before-upgrade.raw"].is_vmstate

    def test_shared_and_replicate_flags(self):
        vols = foreach_volid({"scsi0": "/dev/sdb,shared=1,replicate=0"})
        assert vols["/dev/sdb"].shared
        assert not vols["/dev/sdb"].replicate


class TestRewrite:
    def test_update_volume_ids_everywhere(self):
        conf = {
            "scsi0": "local:100/vm-100-disk-0.raw,size=4G",
            "unused0": "local:100/vm-100-disk-1.raw",
            "pending": {"scsi0": "local:100/vm-100-disk-0.raw,size=8G"},
            "snapshots": {"s1": {"scsi0": "local:100/vm-100-disk-0.raw", "vmstate": "local:100/vm-100-state-s1.raw"}},
        }
        update_volume_ids(
            conf,
            {
                "local:100/vm-100-disk-0.raw": "fast:vm-100-disk-0",
                "local:100/vm-100-disk-1.raw": "fast:vm-100-disk-1",
                "local:100/vm-100-state-s1.raw": "fast:vm-100-state-s1",
            },
        )
        assert conf["scsi0"] == "fast:vm-100-disk-0,size=4G"
        assert conf["unused0"] == "fast:vm-100-disk-1"
        assert conf["pending"]["scsi0"] == "fast:vm-100-disk-0,size=8G"
        assert conf["snapshots"]["s1"] == {"scsi0": "fast:vm-100-disk-0", "vmstate": "fast:vm-100-state-s1"}

    def test_map_bridges(self):
        conf = {"net0": "virtio=BC:24:11:00:00:01,bridge=vmbr0", "net1": "e1000=BC:24:11:00:00:02,bridge=vmbr1"}
        found = map_bridges(conf, IdMap.parse("vmbr0:vmbr10"))
        assert found == {"vmbr10": {"net0": "vmbr0"}, "vmbr1": {"net1": "vmbr1"}}
        assert conf["net0"] == "virtio=BC:24:11:00:00:01,bridge=vmbr10"

    def test_map_bridges_scan_only(self):
        conf = {"net0": "virtio=BC:24:11:00:00:01,bridge=vmbr0"}
        map_bridges(conf, IdMap.parse("vmbr0:vmbr10"), scan_only=True)
        assert conf["net0"].endswith("bridge=vmbr0")


@pytest.mark.parametrize(
    "value,expected",
    [(None, 512), (4096, 4096), ("current=2048,hotplug=1", 2048), ("bogus", 512)],
)
def test_get_current_memory(value, expected):
    conf = {} if value is None else {"memory": value}
    assert get_current_memory(conf) == expected
