import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

import ble_agent.bleak_adapter as bleak_adapter_mod
from ble_agent.adapter import CharacteristicHandle, PeripheralHandle, PowerState, ServiceHandle
from ble_agent.bleak_adapter import BleakAdapter, scan_protocol_devices
from ble_agent.engine import SessionEngine, SessionOutcome
from ble_agent.events import (
    CharacteristicsDiscovered,
    ConnectFailed,
    PeripheralConnected,
    PeripheralDiscovered,
    PeripheralDisconnected,
    PowerStateChanged,
    ServicesDiscovered,
    ValueUpdated,
    WriteCompleted,
)
from ble_agent.uuids import AUTH_SERVICE_UUID, ENROLL_IDS, ENROLL_SERVICE_UUID

from fakes import FakeScheduler


class FakeBleakScanner:
    start_error = None
    discovered: dict = {}
    instances: list = []

    def __init__(self, detection_callback=None, service_uuids=None):
        self.detection_callback = detection_callback
        self.service_uuids = service_uuids
        self.started = False
        self.stopped = False
        type(self).instances.append(self)

    async def start(self):
        if type(self).start_error is not None:
            raise type(self).start_error
        self.started = True

    async def stop(self):
        self.stopped = True

    @classmethod
    async def discover(cls, timeout=5.0, return_adv=False):
        return cls.discovered


class FakeBleakClient:
    connect_error = None
    read_error = None
    services: list = []
    instances: list = []

    def __init__(self, address_or_device, disconnected_callback=None, timeout=10.0):
        self.target = address_or_device
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.is_connected = False
        self.written = []
        type(self).instances.append(self)

    async def connect(self):
        if type(self).connect_error is not None:
            raise type(self).connect_error
        self.is_connected = True

    async def disconnect(self):
        self.is_connected = False
        if self.disconnected_callback:
            self.disconnected_callback(self)

    async def write_gatt_char(self, characteristic, data, response=False):
        self.written.append((characteristic, data, response))

    async def read_gatt_char(self, characteristic):
        if type(self).read_error is not None:
            raise type(self).read_error
        return bytearray(b"ok1")


@pytest.fixture
def fake_bleak(monkeypatch):
    scanner = type("Scanner", (FakeBleakScanner,), {"instances": [], "discovered": {}})
    client = type("Client", (FakeBleakClient,), {"instances": [], "services": []})
    monkeypatch.setattr(bleak_adapter_mod, "BleakScanner", scanner)
    monkeypatch.setattr(bleak_adapter_mod, "BleakClient", client)
    return SimpleNamespace(scanner=scanner, client=client)


@pytest.fixture
def adapter():
    adapter = BleakAdapter()
    adapter.events = []
    adapter.set_event_sink(adapter.events.append)
    return adapter


async def settle(adapter: BleakAdapter) -> None:
    while adapter._tasks:
        await asyncio.gather(*list(adapter._tasks), return_exceptions=True)


def advertisement(*service_uuids, rssi=-60):
    return SimpleNamespace(service_uuids=list(service_uuids), rssi=rssi)


def gatt_service(uuid, *char_uuids):
    return SimpleNamespace(uuid=uuid, characteristics=[SimpleNamespace(uuid=c) for c in char_uuids])


async def connected(adapter, fake_bleak):
    peripheral = PeripheralHandle(address="AA:BB", native=SimpleNamespace(address="AA:BB"))
    adapter.connect(peripheral)
    await settle(adapter)
    adapter.events.clear()
    return peripheral, fake_bleak.client.instances[-1]


# ---------------------------------------------------------------------
# Power
# ---------------------------------------------------------------------

def test_probe_power_on(adapter, fake_bleak):
    state = asyncio.run(adapter.probe_power())

    assert state is PowerState.POWERED_ON
    assert adapter.events == [PowerStateChanged(state=PowerState.POWERED_ON)]


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Bluetooth device is turned off", PowerState.POWERED_OFF),
        ("No powered Bluetooth adapters found.", PowerState.POWERED_OFF),
        ("No Bluetooth adapters found.", PowerState.UNSUPPORTED),
    ],
)
def test_probe_power_errors(adapter, fake_bleak, message, expected):
    fake_bleak.scanner.start_error = BleakError(message)

    state = asyncio.run(adapter.probe_power())

    assert state is expected
    assert adapter.events[-1].state is expected


# ---------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------

def test_scan_filters_by_service(adapter, fake_bleak):
    async def scenario():
        adapter.start_scan(ENROLL_SERVICE_UUID)
        await settle(adapter)
        scanner = fake_bleak.scanner.instances[-1]
        device = SimpleNamespace(address="AA:BB", name="Reader")
        scanner.detection_callback(device, advertisement(AUTH_SERVICE_UUID))
        scanner.detection_callback(device, advertisement(ENROLL_SERVICE_UUID.lower(), rssi=-42))
        return scanner

    scanner = asyncio.run(scenario())

    assert scanner.started
    assert scanner.service_uuids == [ENROLL_SERVICE_UUID]
    assert len(adapter.events) == 1
    event = adapter.events[0]
    assert isinstance(event, PeripheralDiscovered)
    assert event.peripheral.address == "AA:BB"
    assert event.peripheral.name == "Reader"
    assert event.rssi == -42


def test_no_discoveries_after_stop(adapter, fake_bleak):
    async def scenario():
        adapter.start_scan(ENROLL_SERVICE_UUID)
        scanner = fake_bleak.scanner.instances[-1]
        adapter.stop_scan()
        await settle(adapter)
        scanner.detection_callback(SimpleNamespace(address="AA:BB", name=None), advertisement(ENROLL_SERVICE_UUID))
        return scanner

    scanner = asyncio.run(scenario())

    assert scanner.stopped
    assert adapter.events == []


def test_scan_start_failure_is_logged(adapter, fake_bleak, caplog):
    fake_bleak.scanner.start_error = BleakError("busy")

    async def scenario():
        adapter.start_scan(ENROLL_SERVICE_UUID)
        await settle(adapter)

    asyncio.run(scenario())

    assert "Failed to start scan: busy" in caplog.text


def test_restarting_scan_stops_previous_scanner(adapter, fake_bleak):
    async def scenario():
        adapter.start_scan(ENROLL_SERVICE_UUID)
        adapter.start_scan(AUTH_SERVICE_UUID)
        await settle(adapter)

    asyncio.run(scenario())

    first, second = fake_bleak.scanner.instances
    assert first.started and first.stopped
    assert second.started and not second.stopped
    assert second.service_uuids == [AUTH_SERVICE_UUID]


def test_power_cycle_leaves_no_scanner_running(adapter, fake_bleak):
    async def scenario():
        engine = SessionEngine(adapter, schedule=FakeScheduler())
        engine.handle(PowerStateChanged(state=PowerState.POWERED_ON))
        await settle(adapter)
        engine.handle(PowerStateChanged(state=PowerState.POWERED_OFF))
        await settle(adapter)
        engine.handle(PowerStateChanged(state=PowerState.POWERED_ON))
        engine.enroll()
        await settle(adapter)
        engine.reset()
        await adapter.close()
        return engine

    engine = asyncio.run(scenario())

    scanners = fake_bleak.scanner.instances
    assert len(scanners) == 2
    assert all(scanner.started and scanner.stopped for scanner in scanners)
    assert engine.last_outcome is SessionOutcome.ABORTED


# ---------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------

def test_connect_reports_connected(adapter, fake_bleak):
    peripheral = PeripheralHandle(address="AA:BB")

    async def scenario():
        adapter.connect(peripheral)
        await settle(adapter)

    asyncio.run(scenario())

    assert adapter.events == [PeripheralConnected(peripheral=peripheral)]
    assert fake_bleak.client.instances[-1].target == "AA:BB"


def test_connect_failure_reports_error(adapter, fake_bleak):
    fake_bleak.client.connect_error = BleakError("Device not found")
    peripheral = PeripheralHandle(address="AA:BB")

    async def scenario():
        adapter.connect(peripheral)
        await settle(adapter)

    asyncio.run(scenario())

    assert adapter.events == [ConnectFailed(peripheral=peripheral, error="Device not found")]
    assert adapter._clients == {}


def test_disconnect_reports_link_drop(adapter, fake_bleak):
    async def scenario():
        peripheral, client = await connected(adapter, fake_bleak)
        adapter.disconnect(peripheral)
        await settle(adapter)
        return peripheral, client

    peripheral, client = asyncio.run(scenario())

    assert not client.is_connected
    assert adapter.events == [PeripheralDisconnected(peripheral=peripheral)]


def test_disconnect_unknown_peripheral_is_noop(adapter, fake_bleak):
    adapter.disconnect(PeripheralHandle(address="nobody"))

    assert adapter.events == []


# ---------------------------------------------------------------------
# GATT
# ---------------------------------------------------------------------

def test_discover_services_filters_requested(adapter, fake_bleak):
    fake_bleak.client.services = [
        gatt_service("00001800-0000-1000-8000-00805f9b34fb"),
        gatt_service(ENROLL_SERVICE_UUID.lower(), ENROLL_IDS.request, ENROLL_IDS.response),
    ]

    async def scenario():
        peripheral, _ = await connected(adapter, fake_bleak)
        adapter.discover_services(peripheral, [ENROLL_SERVICE_UUID])
        return peripheral

    asyncio.run(scenario())

    event = adapter.events[-1]
    assert isinstance(event, ServicesDiscovered)
    assert event.error is None
    assert [service.uuid for service in event.services] == [ENROLL_SERVICE_UUID.lower()]


def test_discover_services_without_connection(adapter, fake_bleak):
    peripheral = PeripheralHandle(address="AA:BB")

    adapter.discover_services(peripheral, [ENROLL_SERVICE_UUID])

    assert adapter.events == [ServicesDiscovered(peripheral=peripheral, error="not connected")]


def test_discover_characteristics(adapter):
    peripheral = PeripheralHandle(address="AA:BB")
    native = gatt_service(ENROLL_SERVICE_UUID, ENROLL_IDS.request, ENROLL_IDS.response)
    service = ServiceHandle(uuid=ENROLL_SERVICE_UUID, native=native)

    adapter.discover_characteristics(peripheral, service)

    event = adapter.events[-1]
    assert isinstance(event, CharacteristicsDiscovered)
    assert [c.uuid for c in event.characteristics] == [ENROLL_IDS.request, ENROLL_IDS.response]
    assert event.characteristics[0].native is native.characteristics[0]


def test_discover_characteristics_unresolved_service(adapter):
    peripheral = PeripheralHandle(address="AA:BB")

    adapter.discover_characteristics(peripheral, ServiceHandle(uuid=ENROLL_SERVICE_UUID))

    assert adapter.events[-1].error == "service was not resolved by bleak"


def test_write_then_read(adapter, fake_bleak):
    request = CharacteristicHandle(uuid=ENROLL_IDS.request, native="request-char")
    response = CharacteristicHandle(uuid=ENROLL_IDS.response)

    async def scenario():
        peripheral, client = await connected(adapter, fake_bleak)
        adapter.write(peripheral, request, b"Enroll 1 request")
        await settle(adapter)
        adapter.read(peripheral, response)
        await settle(adapter)
        return peripheral, client

    peripheral, client = asyncio.run(scenario())

    assert client.written == [("request-char", b"Enroll 1 request", True)]
    assert adapter.events == [
        WriteCompleted(peripheral=peripheral, characteristic=request),
        ValueUpdated(peripheral=peripheral, characteristic=response, value=b"ok1"),
    ]


def test_read_failure_reports_error(adapter, fake_bleak):
    fake_bleak.client.read_error = BleakError("Read not permitted")
    response = CharacteristicHandle(uuid=ENROLL_IDS.response)

    async def scenario():
        peripheral, _ = await connected(adapter, fake_bleak)
        adapter.read(peripheral, response)
        await settle(adapter)

    asyncio.run(scenario())

    assert adapter.events[-1].error == "Read not permitted"


def test_write_without_connection(adapter):
    peripheral = PeripheralHandle(address="AA:BB")
    request = CharacteristicHandle(uuid=ENROLL_IDS.request)

    adapter.write(peripheral, request, b"x")

    assert adapter.events == [WriteCompleted(peripheral=peripheral, characteristic=request, error="not connected")]


def test_close_disconnects_everything(adapter, fake_bleak):
    async def scenario():
        _, client = await connected(adapter, fake_bleak)
        adapter.start_scan(AUTH_SERVICE_UUID)
        await adapter.close()
        return client

    client = asyncio.run(scenario())

    assert not client.is_connected
    assert fake_bleak.scanner.instances[-1].stopped
    assert adapter._tasks == set()


# ---------------------------------------------------------------------
# Device listing
# ---------------------------------------------------------------------

def test_scan_protocol_devices(fake_bleak):
    reader = SimpleNamespace(address="AA:BB", name="Reader")
    other = SimpleNamespace(address="CC:DD", name="Headphones")
    fake_bleak.scanner.discovered = {
        "AA:BB": (reader, advertisement(AUTH_SERVICE_UUID.lower())),
        "CC:DD": (other, advertisement("0000180f-0000-1000-8000-00805f9b34fb")),
    }

    devices = asyncio.run(scan_protocol_devices(timeout=0.1))

    assert devices == [(reader, [AUTH_SERVICE_UUID.lower()])]
