"""
Typed rejections raised by the job lifecycle core.
Each carries the HTTP status and stable code the request handlers report.
"""
from typing import Any, Dict, Iterable, Optional


class JobWorkflowError(Exception):
    status_code = 400
    code = "job_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class InvalidTransition(JobWorkflowError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, allowed: Iterable[str]):
        allowed_list = list(allowed)
        super().__init__(
            f"Cannot move job from {current} to {requested}",
            current=current,
            requested=requested,
            allowed=allowed_list,
        )


class Forbidden(JobWorkflowError):
    status_code = 403
    code = "forbidden"


class MissingFields(JobWorkflowError):
    status_code = 422
    code = "missing_fields"

    def __init__(self, fields: Iterable[str], target: Optional[str] = None):
        field_list = sorted(set(fields))
        message = "Missing required fields: " + ", ".join(field_list)
        if target:
            message = f"{message} (required for {target})"
        super().__init__(message, fields=field_list)
        self.fields = field_list


class ExternalServiceError(JobWorkflowError):
    status_code = 502
    code = "external_service_error"

    def __init__(self, service: str, message: str):
        super().__init__(message, service=service)
        self.service = service


class ConcurrentModification(JobWorkflowError):
    status_code = 409
    code = "concurrent_modification"


class JobNotFound(JobWorkflowError):
    status_code = 404
    code = "job_not_found"

    def __init__(self, job_id: Any):
        super().__init__("Job not found", job_id=str(job_id))


class LedgerWriteError(JobWorkflowError):
    status_code = 500
    code = "ledger_write_failed"


class InvalidFields(JobWorkflowError):
    status_code = 422
    code = "invalid_fields"

    def __init__(self, errors: Dict[str, str]):
        super().__init__(
            "Invalid values: " + ", ".join(sorted(errors)),
            errors=dict(errors),
        )
        self.errors = dict(errors)


class PersistenceError(JobWorkflowError):
    status_code = 500
    code = "persistence_failed"
