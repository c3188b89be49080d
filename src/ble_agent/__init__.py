"""
BLE central agent for the enrollment/authentication protocol.

This package drives a peripheral through three enrollment rounds and one
authentication round over GATT writes and reads, one session at a time.
"""

__version__ = "0.1.0"

from .adapter import (
    Adapter,
    CharacteristicHandle,
    PeripheralHandle,
    PowerState,
    ServiceHandle,
)
from .engine import (
    AgentConfig,
    SessionEngine,
    SessionOutcome,
    SessionState,
)
from .protocol import (
    ProtocolStage,
    StageAction,
    StageFamily,
    build_request,
    parse_response,
)
from .timeout import DEFAULT_SCAN_TIMEOUT, TimeoutGovernor
from .uuids import (
    AUTH_INPUT_CHAR_UUID,
    AUTH_OUTPUT_CHAR_UUID,
    AUTH_SERVICE_UUID,
    ENROLL_INPUT_CHAR_UUID,
    ENROLL_OUTPUT_CHAR_UUID,
    ENROLL_SERVICE_UUID,
    name_from_uuid,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "AgentConfig",
    "SessionEngine",
    "SessionOutcome",
    "SessionState",
    "TimeoutGovernor",
    "DEFAULT_SCAN_TIMEOUT",
    # Adapter contract
    "Adapter",
    "PowerState",
    "PeripheralHandle",
    "ServiceHandle",
    "CharacteristicHandle",
    # Protocol
    "ProtocolStage",
    "StageFamily",
    "StageAction",
    "build_request",
    "parse_response",
    # Identifiers
    "ENROLL_SERVICE_UUID",
    "ENROLL_INPUT_CHAR_UUID",
    "ENROLL_OUTPUT_CHAR_UUID",
    "AUTH_SERVICE_UUID",
    "AUTH_INPUT_CHAR_UUID",
    "AUTH_OUTPUT_CHAR_UUID",
    "name_from_uuid",
]
