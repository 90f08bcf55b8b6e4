from __future__ import annotations


class AutofixError(Exception):
    code = 'autofix_error'

    def __init__(self, message: str = '', **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details)


class AuthError(AutofixError):
    code = 'unauthorized'


class ClassificationReject(AutofixError):
    code = 'not_bug'


class QuotaExceeded(AutofixError):
    code = 'limit_reached'

    def __init__(self, message: str = '', *, limit: int, count: int):
        super().__init__(message, limit=limit, count=count)
        self.limit = limit
        self.count = count


class MissingTenant(AutofixError):
    code = 'no_tenant'


class AgentFailure(AutofixError):
    code = 'agent_failure'


class StorageFault(AutofixError):
    """A mailbox relocation failed; the single-flight gate may be wedged."""

    code = 'storage_fault'


class DuplicateCallback(AutofixError):
    code = 'duplicate_callback'


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code
