from __future__ import annotations


class LeadScoutError(Exception):
    """Base class for domain errors surfaced to operators.

    ``kind`` is the stable identifier clients match on; ``status_code`` is the
    HTTP status the admin API answers with.
    """

    kind = "error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(LeadScoutError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(LeadScoutError):
    kind = "not_found"
    status_code = 404


class ConflictError(LeadScoutError):
    kind = "conflict"
    status_code = 409


class InvalidTransition(LeadScoutError):
    kind = "invalid_transition"
    status_code = 409


class AlreadyTerminalError(LeadScoutError):
    kind = "already_terminal"
    status_code = 409


class ConfigIncompleteError(LeadScoutError):
    kind = "config_incomplete"
    status_code = 422


class CredentialInvalidError(LeadScoutError):
    kind = "credential_invalid"
    status_code = 422
