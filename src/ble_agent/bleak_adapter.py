"""BLE adapter implementation using bleak."""

import asyncio
import logging
from typing import Any, Coroutine, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .adapter import CharacteristicHandle, EventSink, PeripheralHandle, PowerState, ServiceHandle
from .events import (
    CharacteristicsDiscovered,
    ConnectFailed,
    Event,
    PeripheralConnected,
    PeripheralDiscovered,
    PeripheralDisconnected,
    PowerStateChanged,
    ServicesDiscovered,
    ValueUpdated,
    WriteCompleted,
)
from .uuids import AUTH_SERVICE_UUID, ENROLL_SERVICE_UUID, same_uuid

logger = logging.getLogger(__name__)

# Timeouts (seconds)
CONNECT_TIMEOUT = 10.0
DEVICE_SCAN_TIMEOUT = 10.0

# Fragments of BleakError messages that mean the radio is switched off
_POWERED_OFF_HINTS = ("turned off", "not powered", "no powered", "powered off")


def _power_state_from_error(error: BleakError) -> PowerState:
    message = str(error).lower()
    if any(hint in message for hint in _POWERED_OFF_HINTS):
        return PowerState.POWERED_OFF
    return PowerState.UNSUPPORTED


class BleakAdapter:
    """
    Adapter that drives the local Bluetooth radio through bleak.

    Commands return immediately; the bleak coroutines run as tasks on the
    current event loop and report back through the event sink.
    """

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout
        self._sink: Optional[EventSink] = None
        self._scanner: Optional[BleakScanner] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._scan_service: Optional[str] = None
        self._clients: dict[PeripheralHandle, BleakClient] = {}
        self._connect_tasks: dict[PeripheralHandle, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    def _emit(self, event: Event) -> None:
        if self._sink is None:
            logger.warning(f"Dropping {event.event_type.value}, no event sink installed")
            return
        self._sink(event)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _client_for(self, peripheral: PeripheralHandle) -> Optional[BleakClient]:
        client = self._clients.get(peripheral)
        if client is None:
            logger.error(f"No connection to {peripheral.address}")
        return client

    # ------------------------------------------------------------------
    # Power
    # ------------------------------------------------------------------

    async def probe_power(self) -> PowerState:
        """Check whether the radio can scan and report the result as an event."""
        scanner = BleakScanner()
        try:
            await scanner.start()
            await scanner.stop()
            state = PowerState.POWERED_ON
        except BleakError as e:
            logger.error(f"Bluetooth adapter unavailable: {e}")
            state = _power_state_from_error(e)

        logger.info(f"Radio state: {state.value}")
        self._emit(PowerStateChanged(state=state))
        return state

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def start_scan(self, service_uuid: str) -> None:
        """
        Start scanning for peripherals advertising a service.

        A scanner still held from an earlier scan is stopped first.

        Args:
            service_uuid: Service UUID to filter advertisements on
        """
        if self._scanner is not None:
            logger.debug("Stopping previous scanner")
            self.stop_scan()
        logger.info(f"Scanning for service: {service_uuid}")
        self._scan_service = service_uuid
        self._scanner = BleakScanner(
            detection_callback=self._detection_callback,
            service_uuids=[service_uuid],
        )
        self._scan_task = self._spawn(self._start_scanner(self._scanner))

    def stop_scan(self) -> None:
        """Stop the current scan; no discoveries are reported afterwards."""
        self._scan_service = None
        scanner, self._scanner = self._scanner, None
        start_task, self._scan_task = self._scan_task, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner, start_task))

    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        """Handle an advertisement; some backends ignore the service filter, so check again."""
        service = self._scan_service
        if service is None:
            return
        advertised = advertisement_data.service_uuids or []
        if not any(same_uuid(uuid, service) for uuid in advertised):
            return

        logger.debug(f"Advertisement from {device.address} RSSI={advertisement_data.rssi}")
        peripheral = PeripheralHandle(address=device.address, name=device.name, native=device)
        self._emit(PeripheralDiscovered(peripheral=peripheral, rssi=advertisement_data.rssi))

    async def _start_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.start()
        except Exception as e:
            logger.error(f"Failed to start scan: {e}")

    async def _stop_scanner(self, scanner: BleakScanner, start_task: Optional[asyncio.Task]) -> None:
        if start_task is not None:
            await start_task
        try:
            await scanner.stop()
            logger.debug("Scan stopped")
        except Exception as e:
            logger.error(f"Failed to stop scan: {e}")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, peripheral: PeripheralHandle) -> None:
        """
        Connect to a discovered peripheral.

        Reports PeripheralConnected or ConnectFailed; a later link drop is
        reported as PeripheralDisconnected.

        Args:
            peripheral: Handle from a PeripheralDiscovered event
        """
        logger.info(f"Connecting to {peripheral.address}...")

        def disconnected_callback(_client: BleakClient) -> None:
            logger.info(f"Disconnected from {peripheral.address}")
            self._clients.pop(peripheral, None)
            self._emit(PeripheralDisconnected(peripheral=peripheral))

        client = BleakClient(
            peripheral.native or peripheral.address,
            disconnected_callback=disconnected_callback,
            timeout=self.connect_timeout,
        )
        self._clients[peripheral] = client
        self._connect_tasks[peripheral] = self._spawn(self._connect(peripheral, client))

    async def _connect(self, peripheral: PeripheralHandle, client: BleakClient) -> None:
        try:
            await client.connect()
        except Exception as e:
            logger.error(f"Connection failed: {e}")
            self._clients.pop(peripheral, None)
            self._emit(ConnectFailed(peripheral=peripheral, error=str(e)))
            return
        finally:
            self._connect_tasks.pop(peripheral, None)

        logger.info(f"Connected: {client.is_connected}")
        self._emit(PeripheralConnected(peripheral=peripheral))

    def disconnect(self, peripheral: PeripheralHandle) -> None:
        """Drop the link to ``peripheral``, cancelling a connection still in progress."""
        connect_task = self._connect_tasks.pop(peripheral, None)
        if connect_task is not None and not connect_task.done():
            logger.info(f"Cancelling pending connection to {peripheral.address}")
            connect_task.cancel()
        client = self._clients.pop(peripheral, None)
        if client is not None:
            self._spawn(self._disconnect(client))

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            if client.is_connected:
                await client.disconnect()
                logger.info("Disconnected")
        except Exception as e:
            logger.error(f"Disconnect failed: {e}")

    # ------------------------------------------------------------------
    # GATT
    # ------------------------------------------------------------------

    def discover_services(self, peripheral: PeripheralHandle, service_uuids: list[str]) -> None:
        """Report the connected peripheral's services matching ``service_uuids``.

        bleak resolves the service table while connecting, so this only filters it.
        """
        client = self._client_for(peripheral)
        if client is None:
            self._emit(ServicesDiscovered(peripheral=peripheral, error="not connected"))
            return

        try:
            services = [
                ServiceHandle(uuid=service.uuid, native=service)
                for service in client.services
                if any(same_uuid(service.uuid, uuid) for uuid in service_uuids)
            ]
        except BleakError as e:
            logger.error(f"Service discovery failed: {e}")
            self._emit(ServicesDiscovered(peripheral=peripheral, error=str(e)))
            return

        self._emit(ServicesDiscovered(peripheral=peripheral, services=services))

    def discover_characteristics(self, peripheral: PeripheralHandle, service: ServiceHandle) -> None:
        """Report the characteristics of a service from discover_services()."""
        if service.native is None:
            self._emit(CharacteristicsDiscovered(
                peripheral=peripheral, service=service, error="service was not resolved by bleak",
            ))
            return

        characteristics = [
            CharacteristicHandle(uuid=characteristic.uuid, native=characteristic)
            for characteristic in service.native.characteristics
        ]
        self._emit(CharacteristicsDiscovered(
            peripheral=peripheral, service=service, characteristics=characteristics,
        ))

    def write(self, peripheral: PeripheralHandle, characteristic: CharacteristicHandle, data: bytes) -> None:
        """
        Write ``data`` with response and report WriteCompleted.

        Args:
            peripheral: Connected peripheral
            characteristic: Request characteristic to write
            data: Request frame
        """
        client = self._client_for(peripheral)
        if client is None:
            self._emit(WriteCompleted(peripheral=peripheral, characteristic=characteristic, error="not connected"))
            return
        self._spawn(self._write(peripheral, client, characteristic, data))

    async def _write(
        self,
        peripheral: PeripheralHandle,
        client: BleakClient,
        characteristic: CharacteristicHandle,
        data: bytes,
    ) -> None:
        try:
            logger.debug(f"Writing {len(data)} bytes to {characteristic.uuid}")
            await client.write_gatt_char(characteristic.native or characteristic.uuid, data, response=True)
        except Exception as e:
            logger.error(f"Write failed: {e}")
            self._emit(WriteCompleted(peripheral=peripheral, characteristic=characteristic, error=str(e)))
            return
        self._emit(WriteCompleted(peripheral=peripheral, characteristic=characteristic))

    def read(self, peripheral: PeripheralHandle, characteristic: CharacteristicHandle) -> None:
        """Read the characteristic's value and report it as ValueUpdated."""
        client = self._client_for(peripheral)
        if client is None:
            self._emit(ValueUpdated(peripheral=peripheral, characteristic=characteristic, error="not connected"))
            return
        self._spawn(self._read(peripheral, client, characteristic))

    async def _read(self, peripheral: PeripheralHandle, client: BleakClient, characteristic: CharacteristicHandle) -> None:
        try:
            data = await client.read_gatt_char(characteristic.native or characteristic.uuid)
        except Exception as e:
            logger.error(f"Read failed: {e}")
            self._emit(ValueUpdated(peripheral=peripheral, characteristic=characteristic, error=str(e)))
            return
        logger.debug(f"Read {len(data)} bytes from {characteristic.uuid}")
        self._emit(ValueUpdated(peripheral=peripheral, characteristic=characteristic, value=bytes(data)))

    async def close(self) -> None:
        """Stop scanning, drop every connection and wait for outstanding work."""
        self.stop_scan()
        for peripheral in list(self._clients):
            self.disconnect(peripheral)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def scan_protocol_devices(timeout: float = DEVICE_SCAN_TIMEOUT) -> list[tuple[BLEDevice, list[str]]]:
    """Scan and list nearby devices advertising the enrollment or auth service."""
    logger.info(f"Scanning for protocol devices ({timeout}s)...")
    discovered = await BleakScanner.discover(timeout=timeout, return_adv=True)

    found = []
    for device, advertisement_data in discovered.values():
        services = [
            uuid for uuid in (advertisement_data.service_uuids or [])
            if same_uuid(uuid, ENROLL_SERVICE_UUID) or same_uuid(uuid, AUTH_SERVICE_UUID)
        ]
        if services:
            logger.info(f"  {device.name or 'Unknown'}: {device.address} {services}")
            found.append((device, services))

    return found
