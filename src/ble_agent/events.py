"""
Events consumed by the session engine.

Rules:
- Events describe facts reported by the adapter or the scan timer.
- Events carry data only (no behavior).
- Failures travel in the ``error`` field of the result event; nothing raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union

from .adapter import CharacteristicHandle, PeripheralHandle, PowerState, ServiceHandle


class EventType(str, Enum):
    """Closed set of event types understood by the engine."""

    # Radio
    POWER_STATE_CHANGED = "POWER_STATE_CHANGED"

    # Scanning
    PERIPHERAL_DISCOVERED = "PERIPHERAL_DISCOVERED"
    SCAN_TIMED_OUT = "SCAN_TIMED_OUT"

    # Connection
    PERIPHERAL_CONNECTED = "PERIPHERAL_CONNECTED"
    CONNECT_FAILED = "CONNECT_FAILED"
    PERIPHERAL_DISCONNECTED = "PERIPHERAL_DISCONNECTED"

    # GATT
    SERVICES_DISCOVERED = "SERVICES_DISCOVERED"
    CHARACTERISTICS_DISCOVERED = "CHARACTERISTICS_DISCOVERED"
    WRITE_COMPLETED = "WRITE_COMPLETED"
    VALUE_UPDATED = "VALUE_UPDATED"


@dataclass(frozen=True)
class PowerStateChanged:
    event_type: ClassVar[EventType] = EventType.POWER_STATE_CHANGED
    state: PowerState


@dataclass(frozen=True)
class PeripheralDiscovered:
    event_type: ClassVar[EventType] = EventType.PERIPHERAL_DISCOVERED
    peripheral: PeripheralHandle
    rssi: Optional[int] = None


@dataclass(frozen=True)
class ScanTimedOut:
    """Posted by the timeout governor; ``attempt`` identifies the scan it belongs to."""
    event_type: ClassVar[EventType] = EventType.SCAN_TIMED_OUT
    attempt: int


@dataclass(frozen=True)
class PeripheralConnected:
    event_type: ClassVar[EventType] = EventType.PERIPHERAL_CONNECTED
    peripheral: PeripheralHandle


@dataclass(frozen=True)
class ConnectFailed:
    event_type: ClassVar[EventType] = EventType.CONNECT_FAILED
    peripheral: PeripheralHandle
    error: str


@dataclass(frozen=True)
class PeripheralDisconnected:
    """Link dropped, either on request or by the peer/stack."""
    event_type: ClassVar[EventType] = EventType.PERIPHERAL_DISCONNECTED
    peripheral: PeripheralHandle


@dataclass(frozen=True)
class ServicesDiscovered:
    event_type: ClassVar[EventType] = EventType.SERVICES_DISCOVERED
    peripheral: PeripheralHandle
    services: list[ServiceHandle] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    event_type: ClassVar[EventType] = EventType.CHARACTERISTICS_DISCOVERED
    peripheral: PeripheralHandle
    service: ServiceHandle
    characteristics: list[CharacteristicHandle] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True)
class WriteCompleted:
    event_type: ClassVar[EventType] = EventType.WRITE_COMPLETED
    peripheral: PeripheralHandle
    characteristic: CharacteristicHandle
    error: Optional[str] = None


@dataclass(frozen=True)
class ValueUpdated:
    event_type: ClassVar[EventType] = EventType.VALUE_UPDATED
    peripheral: PeripheralHandle
    characteristic: CharacteristicHandle
    value: bytes = b""
    error: Optional[str] = None


Event = Union[
    PowerStateChanged,
    PeripheralDiscovered,
    ScanTimedOut,
    PeripheralConnected,
    ConnectFailed,
    PeripheralDisconnected,
    ServicesDiscovered,
    CharacteristicsDiscovered,
    WriteCompleted,
    ValueUpdated,
]
