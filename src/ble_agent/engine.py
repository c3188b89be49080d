"""
Session engine for the enrollment/authentication protocol.

States:
    idle -> ENROLL_ROUND_1 -> ENROLL_ROUND_2 -> ENROLL_ROUND_3 -> AUTHENTICATE -> idle
    idle -> AUTHENTICATE -> idle

Each stage entry runs the pipeline scan -> connect -> discover services ->
discover characteristics -> write request -> read response. All adapter
results arrive as events and are handled one at a time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Optional

from .adapter import Adapter, CharacteristicHandle, PeripheralHandle
from .events import (
    CharacteristicsDiscovered,
    ConnectFailed,
    Event,
    EventType,
    PeripheralConnected,
    PeripheralDiscovered,
    PeripheralDisconnected,
    PowerStateChanged,
    ScanTimedOut,
    ServicesDiscovered,
    ValueUpdated,
    WriteCompleted,
)
from .protocol import (
    AUTH_START,
    ENROLL_START,
    ProtocolStage,
    StageAction,
    build_request,
    parse_response,
    transition_for,
)
from .timeout import DEFAULT_SCAN_TIMEOUT, Scheduler, TimeoutGovernor
from .uuids import name_from_uuid, same_uuid

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Engine configuration."""
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    auto_enroll: bool = True  # start enrollment the first time power turns on
    # False keeps the session busy after a write/read failure until reset()
    teardown_on_transport_error: bool = True

    def __post_init__(self):
        if self.scan_timeout <= 0:
            raise ValueError(f"scan_timeout must be positive, got {self.scan_timeout}")


class SessionOutcome(Enum):
    """How the last session ended."""
    COMPLETED = auto()
    TIMED_OUT = auto()
    FAILED = auto()
    ABORTED = auto()


@dataclass
class SessionState:
    """Mutable session record. Reset at every flow start and every disconnect."""
    stage: ProtocolStage = ENROLL_START
    busy: bool = False
    powered_on: bool = False
    active_service: str = ENROLL_START.family.ids.service
    # Held from discovery until disconnect; the adapter owns the link
    connected_peripheral: Optional[PeripheralHandle] = None
    request_characteristic: Optional[CharacteristicHandle] = None
    response_characteristic: Optional[CharacteristicHandle] = None
    scanning: bool = False
    scan_attempt: int = 0
    awaiting_response: bool = False
    rounds: list[tuple[ProtocolStage, str]] = field(default_factory=list)

    def clear_link(self) -> None:
        self.connected_peripheral = None
        self.request_characteristic = None
        self.response_characteristic = None
        self.awaiting_response = False


_STOP = object()


class SessionEngine:
    """
    Drives one enrollment or authentication session at a time.

    ``enroll()`` and ``auth()`` are fire-and-forget: a call made while a
    session is busy, or while the radio is not powered on, is logged and
    ignored. Failures never propagate to the caller.
    """

    def __init__(
        self,
        adapter: Adapter,
        config: Optional[AgentConfig] = None,
        schedule: Optional[Scheduler] = None,
    ):
        """
        Initialize the engine.

        Args:
            adapter: BLE capability provider; its events are routed to post()
            config: Engine configuration
            schedule: Timer scheduler, defaults to the running event loop
        """
        self.adapter = adapter
        self.config = config or AgentConfig()
        self.state = SessionState()
        self.timer = TimeoutGovernor(self.config.scan_timeout, schedule)
        self.last_outcome: Optional[SessionOutcome] = None
        self._auto_enrolled = False
        self._events: asyncio.Queue = asyncio.Queue()
        self._handlers: dict[EventType, Callable] = {
            EventType.POWER_STATE_CHANGED: self._on_power_state,
            EventType.PERIPHERAL_DISCOVERED: self._on_discovered,
            EventType.SCAN_TIMED_OUT: self._on_scan_timeout,
            EventType.PERIPHERAL_CONNECTED: self._on_connected,
            EventType.CONNECT_FAILED: self._on_connect_failed,
            EventType.PERIPHERAL_DISCONNECTED: self._on_disconnected,
            EventType.SERVICES_DISCOVERED: self._on_services,
            EventType.CHARACTERISTICS_DISCOVERED: self._on_characteristics,
            EventType.WRITE_COMPLETED: self._on_write,
            EventType.VALUE_UPDATED: self._on_value,
        }
        adapter.set_event_sink(self.post)

    @property
    def busy(self) -> bool:
        return self.state.busy

    @property
    def powered_on(self) -> bool:
        return self.state.powered_on

    @property
    def stage(self) -> ProtocolStage:
        return self.state.stage

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    def enroll(self) -> None:
        logger.info("enroll")
        if self._can_start():
            self._begin(ENROLL_START)

    def auth(self) -> None:
        logger.info("auth")
        if self._can_start():
            self._begin(AUTH_START)

    def reset(self) -> None:
        """Abandon any session in progress and return to idle."""
        logger.info("reset")
        was_busy = self.state.busy
        self._teardown()
        if was_busy:
            self._finish(SessionOutcome.ABORTED)

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def post(self, event: Event) -> None:
        """Queue an event for the dispatcher."""
        self._events.put_nowait(event)

    def handle(self, event: Event) -> None:
        """Run the transition for a single event."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.warning(f"No handler for event {event.event_type.value}")
            return
        handler(event)

    def process_pending(self) -> int:
        """Handle every queued event without waiting. Returns the number handled."""
        count = 0
        while not self._events.empty():
            event = self._events.get_nowait()
            if event is _STOP:
                continue
            self.handle(event)
            count += 1
        return count

    async def run(self) -> None:
        """Consume events one at a time until stop() is called."""
        logger.debug("Dispatcher started")
        while True:
            event = await self._events.get()
            if event is _STOP:
                break
            try:
                self.handle(event)
            except Exception:
                logger.exception(f"Error handling {event.event_type.value}")
        logger.debug("Dispatcher stopped")

    def stop(self) -> None:
        self._events.put_nowait(_STOP)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _can_start(self) -> bool:
        if self.state.busy:
            logger.info("busy, ignoring")
            return False
        if not self.state.powered_on:
            logger.info("not powered on")
            return False
        return True

    def _begin(self, stage: ProtocolStage) -> None:
        """
        Start a new session at ``stage`` and scan for its service.

        Args:
            stage: First stage of the flow (ENROLL_START or AUTH_START)
        """
        self.state.busy = True
        self.state.rounds = []
        self.last_outcome = None
        self._set_stage(stage)
        self._start_scan()

    def _set_stage(self, stage: ProtocolStage) -> None:
        self.state.stage = stage
        logger.info(f"state changed to {stage.label}")

    def _start_scan(self) -> None:
        """
        Scan for the current stage family's service.

        Drops any held link, bumps the scan attempt and arms the timeout
        tagged with it, so a timer left over from an earlier scan is ignored.
        """
        service = self.state.stage.family.ids.service
        self.state.active_service = service
        logger.info(f"startScanForPeripheralWithService {name_from_uuid(service)} {service}")
        if self.state.scanning:
            self.adapter.stop_scan()
        self.state.clear_link()
        self.state.scan_attempt += 1
        attempt = self.state.scan_attempt
        self.timer.arm(lambda: self.post(ScanTimedOut(attempt=attempt)))
        self.state.scanning = True
        self.adapter.start_scan(service)

    def _disconnect(self) -> None:
        peripheral = self.state.connected_peripheral
        if peripheral is not None:
            logger.info(f"disconnect {peripheral.address}")
            self.adapter.disconnect(peripheral)
        self.state.clear_link()

    def _teardown(self) -> None:
        self.timer.disarm()
        if self.state.scanning:
            self.state.scanning = False
            self.adapter.stop_scan()
        self._disconnect()

    def _finish(self, outcome: SessionOutcome) -> None:
        self.state.busy = False
        self.last_outcome = outcome
        logger.info(f"session finished: {outcome.name}")

    def _fail(self, reason: str) -> None:
        logger.error(f"{reason} in state {self.state.stage.label}")
        self._teardown()
        self._finish(SessionOutcome.FAILED)

    def _transport_error(self, reason: str) -> None:
        if self.config.teardown_on_transport_error:
            self._fail(reason)
        else:
            logger.error(f"{reason} in state {self.state.stage.label}; session stalled until reset()")

    def _owns(self, peripheral: PeripheralHandle) -> bool:
        return self.state.busy and peripheral is self.state.connected_peripheral

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _send_request(self) -> None:
        """Write the current stage's request frame; the read follows the write ack."""
        request = self.state.stage.request_text
        logger.info(f"sendRequest in state {self.state.stage.label}: {request}")
        self.state.awaiting_response = True
        self.adapter.write(
            self.state.connected_peripheral,
            self.state.request_characteristic,
            build_request(self.state.stage),
        )

    def _on_response_received(self, payload: str) -> None:
        """
        Record a response and apply the stage's transition.

        Args:
            payload: Decoded response text for the current stage
        """
        stage = self.state.stage
        logger.info(f"processResponse in state {stage.label}: {payload}")
        self.state.rounds.append((stage, payload))
        transition = transition_for(stage)

        if transition.action is StageAction.SEND_REQUEST:
            self._set_stage(transition.next_stage)
            self._send_request()
        elif transition.action is StageAction.RESCAN:
            self._set_stage(transition.next_stage)
            self._disconnect()
            self._start_scan()
        else:
            self._disconnect()
            self._finish(SessionOutcome.COMPLETED)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_power_state(self, event: PowerStateChanged) -> None:
        logger.info(f"power state {event.state.value}")
        was_on = self.state.powered_on
        self.state.powered_on = event.state.usable

        if was_on and not self.state.powered_on and self.state.busy:
            logger.warning("radio powered down during session")
            self.timer.disarm()
            if self.state.scanning:
                self.state.scanning = False
                self.adapter.stop_scan()
            self.state.clear_link()
            self._finish(SessionOutcome.ABORTED)
        elif self.state.powered_on and not self._auto_enrolled and self.config.auto_enroll:
            self._auto_enrolled = True
            self.enroll()

    def _on_scan_timeout(self, event: ScanTimedOut) -> None:
        if not (self.state.busy and self.state.scanning and event.attempt == self.state.scan_attempt):
            logger.debug(f"Ignoring stale scan timeout (attempt {event.attempt})")
            return
        logger.warning("timed out")
        self.state.scanning = False
        self.adapter.stop_scan()
        self._finish(SessionOutcome.TIMED_OUT)

    def _on_discovered(self, event: PeripheralDiscovered) -> None:
        if not (self.state.busy and self.state.scanning):
            logger.debug(f"Ignoring discovery of {event.peripheral.address}, not scanning")
            return
        logger.info(f"didDiscoverPeripheral {event.peripheral.name or 'Unknown'} ({event.peripheral.address})")
        self.timer.disarm()
        self.state.scanning = False
        self.adapter.stop_scan()
        self.state.connected_peripheral = event.peripheral
        self.adapter.connect(event.peripheral)

    def _on_connected(self, event: PeripheralConnected) -> None:
        if not self._owns(event.peripheral):
            return
        logger.info(f"didConnectPeripheral {event.peripheral.address}")
        self.adapter.discover_services(event.peripheral, [self.state.active_service])

    def _on_connect_failed(self, event: ConnectFailed) -> None:
        if not self._owns(event.peripheral):
            return
        self._fail(f"connect failed: {event.error}")

    def _on_disconnected(self, event: PeripheralDisconnected) -> None:
        if not self._owns(event.peripheral):
            logger.debug(f"{event.peripheral.address} disconnected")
            return
        logger.error(f"{event.peripheral.address} disconnected unexpectedly in state {self.state.stage.label}")
        self.timer.disarm()
        self.state.clear_link()
        self._finish(SessionOutcome.FAILED)

    def _on_services(self, event: ServicesDiscovered) -> None:
        if not self._owns(event.peripheral):
            return
        if event.error:
            self._fail(f"didDiscoverServices error {event.error}")
            return
        if not event.services:
            self._fail("no services found")
            return
        logger.info("didDiscoverServices ok")
        for service in event.services:
            logger.info(f"service {name_from_uuid(service.uuid)} {service.uuid}")
            self.adapter.discover_characteristics(event.peripheral, service)

    def _on_characteristics(self, event: CharacteristicsDiscovered) -> None:
        if not self._owns(event.peripheral):
            return
        service_name = name_from_uuid(event.service.uuid)
        if event.error:
            self._fail(f"didDiscoverCharacteristicsForService {service_name} error {event.error}")
            return
        logger.info(f"didDiscoverCharacteristicsForService {service_name} ok")
        if self.state.awaiting_response:
            return

        ids = self.state.stage.family.ids
        for characteristic in event.characteristics:
            logger.info(f"characteristic {name_from_uuid(characteristic.uuid)} {characteristic.uuid}")
            if same_uuid(characteristic.uuid, ids.request):
                self.state.request_characteristic = characteristic
            elif same_uuid(characteristic.uuid, ids.response):
                self.state.response_characteristic = characteristic

        if self.state.request_characteristic is None or self.state.response_characteristic is None:
            self._fail(f"{service_name} is missing its request/response characteristics")
            return
        self._send_request()

    def _on_write(self, event: WriteCompleted) -> None:
        if not (self._owns(event.peripheral) and self.state.awaiting_response):
            return
        if event.error:
            self._transport_error(f"didWriteValueForCharacteristic error {event.error}")
            return
        logger.info("didWriteValueForCharacteristic ok")
        self.adapter.read(event.peripheral, self.state.response_characteristic)

    def _on_value(self, event: ValueUpdated) -> None:
        if not (self._owns(event.peripheral) and self.state.awaiting_response):
            return
        if event.characteristic is not self.state.response_characteristic:
            return
        if event.error:
            self._transport_error(f"didUpdateValueForCharacteristic error {event.error}")
            return
        logger.info(f"didUpdateValueForCharacteristic {name_from_uuid(event.characteristic.uuid)} ok")
        self.state.awaiting_response = False
        self._on_response_received(parse_response(event.value))
