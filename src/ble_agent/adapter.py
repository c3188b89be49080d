"""Radio adapter capability contract used by the session engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

if TYPE_CHECKING:
    from .events import Event

EventSink = Callable[["Event"], None]


class PowerState(Enum):
    """Radio power states reported by the adapter."""
    UNKNOWN = "Unknown"
    RESETTING = "Resetting"
    UNSUPPORTED = "Unsupported"
    UNAUTHORIZED = "Unauthorized"
    POWERED_OFF = "PoweredOff"
    POWERED_ON = "PoweredOn"

    @property
    def usable(self) -> bool:
        return self is PowerState.POWERED_ON


@dataclass(eq=False)
class PeripheralHandle:
    """
    Reference to an adapter-owned peripheral.

    Identity comparison only; ``native`` is whatever the backend uses
    (a ``bleak`` ``BLEDevice`` for :class:`BleakAdapter`).
    """
    address: str
    name: Optional[str] = None
    native: Any = field(default=None, repr=False)


@dataclass(eq=False)
class ServiceHandle:
    uuid: str
    native: Any = field(default=None, repr=False)


@dataclass(eq=False)
class CharacteristicHandle:
    uuid: str
    native: Any = field(default=None, repr=False)


class Adapter(Protocol):
    """
    Capabilities the engine needs from the BLE stack.

    Every method is a non-blocking command. Results are delivered later as
    events through the sink installed with :meth:`set_event_sink`.
    """

    def set_event_sink(self, sink: EventSink) -> None:
        ...

    def start_scan(self, service_uuid: str) -> None:
        """Scan for peripherals advertising exactly this service."""
        ...

    def stop_scan(self) -> None:
        ...

    def connect(self, peripheral: PeripheralHandle) -> None:
        ...

    def disconnect(self, peripheral: PeripheralHandle) -> None:
        ...

    def discover_services(self, peripheral: PeripheralHandle, service_uuids: list[str]) -> None:
        ...

    def discover_characteristics(self, peripheral: PeripheralHandle, service: ServiceHandle) -> None:
        ...

    def write(self, peripheral: PeripheralHandle, characteristic: CharacteristicHandle, data: bytes) -> None:
        """Write with response; completion arrives as ``WriteCompleted``."""
        ...

    def read(self, peripheral: PeripheralHandle, characteristic: CharacteristicHandle) -> None:
        """Read a value; the value arrives as ``ValueUpdated``."""
        ...
