"""
tests/test_devices.py

FileDeviceSource loading (valid, invalid and legacy entries), vendor
write-back, and interface/vendor discovery over the stub and a fake
session.
"""

from __future__ import annotations

import json

import pytest

from conftest import FakeSession
from smon.devices import FileDeviceSource, discover_device, read_vendor, store_vendor
from smon.snmp_client import StubSnmpSession
from smon.vendors import Vendor


INVENTORY = {
    "snmpDevices": [
        {
            "id": "core-sw1",
            "name": "Core switch",
            "host": "10.0.0.2",
            "vendor": "cisco",
            "selectedInterfaces": [{"index": 1, "name": "Gi0/1"}, "Gi0/2"],
        },
        {"id": "edge", "name": "Edge router", "host": "10.0.0.3", "vendor": "acme"},
        {"name": "no id or host"},
    ],
    "probeTargets": [
        {"id": 1, "name": "Google DNS", "host": "8.8.8.8", "group": "DNS"},
        {"id": 2, "host": "1.1.1.1"},
    ],
}


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text(json.dumps(INVENTORY), encoding="utf-8")
    return path


class TestFileDeviceSource:

    def test_loads_valid_devices(self, inventory):
        source = FileDeviceSource(inventory)
        assert sorted(d.id for d in source.devices()) == ["core-sw1", "edge"]

    def test_legacy_string_interfaces_dropped(self, inventory):
        device = FileDeviceSource(inventory).get("core-sw1")
        assert [(i.index, i.name) for i in device.interfaces] == [(1, "Gi0/1")]
        assert device.vendor is Vendor.CISCO
        assert device.community == "public"

    def test_unknown_vendor_becomes_none(self, inventory):
        assert FileDeviceSource(inventory).get("edge").vendor is None

    def test_loads_valid_probe_targets(self, inventory):
        (target,) = FileDeviceSource(inventory).probe_targets()
        assert (target.id, target.group) == ("1", "DNS")

    def test_missing_file_means_no_devices(self, tmp_path):
        source = FileDeviceSource(tmp_path / "absent.json")
        assert source.devices() == []
        assert source.probe_targets() == []

    def test_update_vendor_persists(self, inventory):
        source = FileDeviceSource(inventory)
        source.update_vendor("edge", Vendor.JUNIPER)
        assert source.get("edge").vendor is Vendor.JUNIPER

        raw = json.loads(inventory.read_text(encoding="utf-8"))
        assert raw["snmpDevices"][1]["vendor"] == "juniper"
        # untouched entries keep their original shape
        assert raw["snmpDevices"][0]["selectedInterfaces"][1] == "Gi0/2"
        assert FileDeviceSource(inventory).get("edge").vendor is Vendor.JUNIPER

    def test_update_unknown_device_is_noop(self, inventory):
        before = inventory.read_text(encoding="utf-8")
        FileDeviceSource(inventory).update_vendor("ghost", Vendor.HP)
        assert inventory.read_text(encoding="utf-8") == before


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_read_vendor(self):
        session = FakeSession({"1.3.6.1.2.1.1.1.0": "Huawei Versatile Routing Platform"})
        assert await read_vendor(session) is Vendor.HUAWEI

    @pytest.mark.asyncio
    async def test_read_vendor_no_answer(self):
        assert await read_vendor(FakeSession()) is None

    @pytest.mark.asyncio
    async def test_discover_stub(self):
        result = await discover_device(StubSnmpSession(interfaces=3, sys_descr="Cisco IOS"), host="stub")
        assert result.vendor is Vendor.CISCO
        assert [(i.index, i.name) for i in result.interfaces] == [
            (1, "stub-if1"), (2, "stub-if2"), (3, "stub-if3"),
        ]

    @pytest.mark.asyncio
    async def test_discover_ignores_rows_outside_column(self):
        root = "1.3.6.1.2.1.2.2.1.2"
        session = FakeSession({
            f"{root}.1": "eth0",
            f"{root}.2": "eth1",
            f"{root}.5.7": "nested",
            f"{root}.0": "bogus",
        })
        result = await discover_device(session)
        assert result.vendor is None
        assert [(i.index, i.name) for i in result.interfaces] == [(1, "eth0"), (2, "eth1")]

    @pytest.mark.asyncio
    async def test_discover_unreachable(self):
        result = await discover_device(FakeSession(down=True), host="10.9.9.9")
        assert result.vendor is None
        assert result.interfaces == []

    @pytest.mark.asyncio
    async def test_discover_writes_vendor_back(self, inventory):
        source = FileDeviceSource(inventory)
        session = StubSnmpSession(interfaces=2, sys_descr="Juniper Networks, Inc. ex2300")
        result = await discover_device(session, host="10.0.0.3", source=source, device_id="edge")
        assert result.vendor is Vendor.JUNIPER
        assert result.answered is True
        raw = json.loads(inventory.read_text(encoding="utf-8"))
        assert raw["snmpDevices"][1]["vendor"] == "juniper"

    @pytest.mark.asyncio
    async def test_discover_without_vendor_writes_nothing(self, inventory):
        before = inventory.read_text(encoding="utf-8")
        source = FileDeviceSource(inventory)
        result = await discover_device(FakeSession(down=True), source=source, device_id="edge")
        assert result.answered is False
        assert inventory.read_text(encoding="utf-8") == before

    def test_store_vendor_failure_is_reported(self):
        class ReadOnlySource:
            def update_vendor(self, device_id, vendor):
                raise PermissionError("read-only inventory")

        assert store_vendor(ReadOnlySource(), "edge", Vendor.HP) is False
