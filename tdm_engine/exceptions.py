"""
Exception hierarchy for the dosing engine.

Every error carries a machine-readable code and a details dict so the API
layer can return it unchanged.
"""
from typing import Any, Dict, Optional


class TDMError(Exception):
    """Base exception for all dosing engine errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class DatasetError(TDMError):
    """The case cannot be turned into an evaluator dataset."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="DATASET_ERROR", details=details)


class EvaluatorError(TDMError):
    """The forecasting evaluator rejected or failed a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: str = "EVALUATOR_ERROR",
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(
            message=message,
            code=code,
            details={"status_code": status_code, "retryable": retryable, **(details or {})},
        )
        self.status_code = status_code
        self.retryable = retryable


class EvaluatorBusyError(EvaluatorError):
    """The evaluator stayed busy for every allowed attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(
            message=message,
            status_code=status_code,
            code="EVALUATOR_BUSY",
            details={"attempts": attempts},
            retryable=True,
        )
        self.attempts = attempts


class EvaluatorResponseError(EvaluatorError):
    """The evaluator answered with a body that does not match the contract."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="EVALUATOR_BAD_RESPONSE", details=details)
