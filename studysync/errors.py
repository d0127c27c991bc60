from __future__ import annotations


class StudySyncError(Exception):
    status_code = 500
    error_class = "internal"

    def details(self) -> str:
        return ""


class InvalidRequestError(StudySyncError):
    status_code = 400
    error_class = "invalid_request"


class AuthenticationError(StudySyncError):
    status_code = 401
    error_class = "unauthorized"


class PermissionDeniedError(StudySyncError):
    status_code = 403
    error_class = "forbidden"


class RateLimitExceededError(StudySyncError):
    status_code = 429
    error_class = "rate_limited"


class AuthExpiredError(StudySyncError):
    status_code = 401
    error_class = "auth_expired"

    def details(self) -> str:
        return "Please reconnect your Google account."


class ConflictNotFoundError(StudySyncError):
    status_code = 404
    error_class = "conflict_not_found"

    def __init__(self, conflict_id: int | str) -> None:
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class ProviderApiError(StudySyncError):
    status_code = 500
    error_class = "provider_error"

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Google Calendar API error ({status}): {message}")
        self.status = status
        self.provider_message = message

    def details(self) -> str:
        return self.provider_message


class SyncTokenExpiredError(ProviderApiError):
    error_class = "sync_token_expired"

    def __init__(self, message: str = "Sync token is no longer valid") -> None:
        super().__init__(410, message)


class SyncTimeoutError(StudySyncError):
    status_code = 504
    error_class = "timeout"

    def __init__(self, budget_seconds: float) -> None:
        super().__init__(f"Sync pass exceeded its {budget_seconds:g}s budget")
        self.budget_seconds = budget_seconds
