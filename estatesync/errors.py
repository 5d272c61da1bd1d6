from __future__ import annotations

from typing import Any

TOKEN_INVALID = "TOKEN_INVALID"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
DATA_MISMATCH = "DATA_MISMATCH"
SCHEMA_INCOMPATIBLE = "SCHEMA_INCOMPATIBLE"
VALIDATION_FAILED = "VALIDATION_FAILED"
RECORD_UNRESOLVED = "RECORD_UNRESOLVED"
IMPORT_FAILED = "IMPORT_FAILED"


class EstateSyncError(Exception):
    code = "ESTATESYNC_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_response(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(EstateSyncError):
    """Malformed or incompatible snapshot. Never retryable."""

    code = VALIDATION_FAILED
    http_status = 400

    def __init__(self, errors: list[str], *, code: str | None = None) -> None:
        cleaned = [str(item) for item in errors if str(item).strip()] or ["Invalid import file"]
        super().__init__("; ".join(cleaned), code=code)
        self.errors = cleaned

    def to_response(self) -> dict[str, Any]:
        payload = super().to_response()
        payload.update({"valid": False, "errors": list(self.errors)})
        return payload


class TokenError(EstateSyncError):
    http_status = 400

    _MESSAGES = {
        TOKEN_INVALID: "Invalid or expired confirmation token",
        TOKEN_EXPIRED: "Confirmation token has expired",
        DATA_MISMATCH: "Import data has changed since validation",
    }

    def __init__(self, code: str) -> None:
        super().__init__(self._MESSAGES.get(code, "Confirmation token rejected"), code=code)


class RecordResolutionError(EstateSyncError):
    code = RECORD_UNRESOLVED
    http_status = 422

    def __init__(self, kind: str, identifier: str, parent_kind: str, reference: str) -> None:
        super().__init__(
            f"Cannot resolve {parent_kind} reference {reference!r} for {kind} record {identifier!r}"
        )
        self.kind = kind
        self.identifier = identifier
        self.parent_kind = parent_kind
        self.reference = reference


class RecordImportError(EstateSyncError):
    code = IMPORT_FAILED
    http_status = 500

    def __init__(self, kind: str, identifier: str, cause: BaseException) -> None:
        super().__init__(f"Failed to import {kind} {identifier}: {cause}")
        self.kind = kind
        self.identifier = identifier
        self.cause = cause


class TransactionError(EstateSyncError):
    """Lower-layer failure. The message is safe to show; details stay in logs."""

    code = IMPORT_FAILED
    http_status = 500

    def __init__(self, message: str = "Import failed - transaction rolled back", *, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail
