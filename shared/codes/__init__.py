"""
Relay status codes shared across layers (Domain/Application/API).

Codes <= 100 are success/informational, codes > 100 denote a failure.
"""
from enum import IntEnum


class StatusCode(IntEnum):
    """Relay status codes (single source of truth)."""

    # Informational
    TEST = 0
    ECHO = 1

    # Success
    OK = 100

    # Failures (101+)
    SYNTAX = 101
    DATATYPE = 102
    ID_NOT_FOUND = 103
    ID_AMBIGUOUS = 104
    INTERNAL_ERROR = 105
    EMPTY_PACKET = 106
    ID_ALREADY_SET = 107
    REFUSED = 108
    INVALID_COMMAND = 109
    COMMAND_DISABLED = 110
    ID_REQUIRED = 111
    ID_CONFLICT = 112
    TOO_LARGE = 113
    JSON_ERROR = 114
    ROOM_NOT_JOINED = 115


STATUS_NAMES: dict[int, str] = {
    StatusCode.TEST: "Test",
    StatusCode.ECHO: "Echo",
    StatusCode.OK: "OK",
    StatusCode.SYNTAX: "Syntax",
    StatusCode.DATATYPE: "Datatype",
    StatusCode.ID_NOT_FOUND: "ID not found",
    StatusCode.ID_AMBIGUOUS: "ID not specific enough",
    StatusCode.INTERNAL_ERROR: "Internal server error",
    StatusCode.EMPTY_PACKET: "Empty packet",
    StatusCode.ID_ALREADY_SET: "ID already set",
    StatusCode.REFUSED: "Refused",
    StatusCode.INVALID_COMMAND: "Invalid command",
    StatusCode.COMMAND_DISABLED: "Command disabled",
    StatusCode.ID_REQUIRED: "ID required",
    StatusCode.ID_CONFLICT: "ID conflict",
    StatusCode.TOO_LARGE: "Too large",
    StatusCode.JSON_ERROR: "JSON error",
    StatusCode.ROOM_NOT_JOINED: "Room not joined",
}

# Highest code still treated as a success by clients
SUCCESS_THRESHOLD = 100


def status_name(code: int) -> str:
    return STATUS_NAMES.get(code, "Unknown")


def is_success(code: int) -> bool:
    return int(code) <= SUCCESS_THRESHOLD


__all__ = ["StatusCode", "STATUS_NAMES", "SUCCESS_THRESHOLD", "status_name", "is_success"]
