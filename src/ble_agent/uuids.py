"""GATT identifiers shared with the peripheral firmware."""

from dataclasses import dataclass

# Enrollment Service UUID
ENROLL_SERVICE_UUID = "80CBFCD9-C13A-4817-8921-349F3702A4D0"

# Enroll Input Characteristic - receives request frames from the agent
ENROLL_INPUT_CHAR_UUID = "40A70AAD-6E05-4EBD-B9DB-2010DC412881"

# Enroll Output Characteristic - holds the response frame for the agent to read
ENROLL_OUTPUT_CHAR_UUID = "AC103510-5E49-41C5-94DA-CBA4329A6CF5"

# Authentication Service UUID
AUTH_SERVICE_UUID = "1012A197-B767-421C-B49C-10F385BA22E1"

# Auth Input Characteristic - receives request frames from the agent
AUTH_INPUT_CHAR_UUID = "E11C666D-A68C-4775-A05E-2765830D5D60"

# Auth Output Characteristic - holds the response frame for the agent to read
AUTH_OUTPUT_CHAR_UUID = "BEDFA15A-9048-4ABD-8455-6E164F4878E3"


@dataclass(frozen=True)
class FamilyIds:
    """Service and characteristic pair used by one stage family."""
    service: str
    request: str  # write
    response: str  # read


ENROLL_IDS = FamilyIds(
    service=ENROLL_SERVICE_UUID,
    request=ENROLL_INPUT_CHAR_UUID,
    response=ENROLL_OUTPUT_CHAR_UUID,
)

AUTH_IDS = FamilyIds(
    service=AUTH_SERVICE_UUID,
    request=AUTH_INPUT_CHAR_UUID,
    response=AUTH_OUTPUT_CHAR_UUID,
)

_LABELS = {
    ENROLL_SERVICE_UUID: "enrollService",
    ENROLL_INPUT_CHAR_UUID: "enrollInput",
    ENROLL_OUTPUT_CHAR_UUID: "enrollOutput",
    AUTH_SERVICE_UUID: "authService",
    AUTH_INPUT_CHAR_UUID: "authInput",
    AUTH_OUTPUT_CHAR_UUID: "authOutput",
}


def normalize_uuid(uuid: str) -> str:
    """Upper-case a UUID string so identifiers compare regardless of backend casing."""
    return uuid.strip().upper()


def same_uuid(a: str, b: str) -> bool:
    return normalize_uuid(a) == normalize_uuid(b)


def name_from_uuid(uuid: str) -> str:
    """Return a human-readable label for a protocol UUID (diagnostics only)."""
    return _LABELS.get(normalize_uuid(uuid), "unknown")
