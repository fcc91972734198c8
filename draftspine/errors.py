"""
DraftSpine Errors
=================

Typed results for every fallible history operation. Expected conditions
(bad version number, unknown branch, corrupt record) come back as a Result
carrying a HistoryError; nothing here is raised at the editing surface.

Usage:
    result = engine.get_version_content(3)
    if result.ok:
        editor.set_content(result.data)
    else:
        print(result.error.code, result.error.message)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(Enum):
    """Error taxonomy shared by the engine, codec and HTTP adapter."""
    INVALID_VERSION = "INVALID_VERSION"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    CONTENT_CORRUPTED = "CONTENT_CORRUPTED"
    STORAGE_ERROR = "STORAGE_ERROR"
    BRANCH_NOT_FOUND = "BRANCH_NOT_FOUND"
    INVALID_BRANCH = "INVALID_BRANCH"
    INVALID_CONTENT = "INVALID_CONTENT"
    INVALID_STORAGE = "INVALID_STORAGE"
    INVALID_OPERATION = "INVALID_OPERATION"


class ErrorMessages:
    """Message builders, kept together so wording stays consistent."""

    @staticmethod
    def version_invalid(version: Any) -> str:
        return f"Invalid version number: {version}"

    @staticmethod
    def version_not_found(version: Any) -> str:
        return f"Version {version} not found"

    @staticmethod
    def version_content_not_found(version: Any) -> str:
        return f"Version {version} content not found"

    @staticmethod
    def version_out_of_range(version: Any, low: int, high: int) -> str:
        return f"Version {version} is outside the range {low}..{high}"

    @staticmethod
    def storage_recovered(version: int) -> str:
        return f"Storage recovered up to version {version}"

    @staticmethod
    def branch_not_found(branch_id: Any) -> str:
        return f"Branch {branch_id} not found"

    @staticmethod
    def branch_invalid(branch_id: Any) -> str:
        return f"Branch {branch_id} is invalid"

    STORAGE_CORRUPTED = "Storage is corrupted and cannot be recovered"
    STORAGE_UNREADABLE = "Stored history could not be read"
    STORAGE_WRITE_FAILED = "History could not be written to storage"
    START_GREATER_THAN_END = "Start version cannot be greater than end version"
    CONTENT_CORRUPTED = "Version content is corrupted"
    INVALID_CONTENT = "Invalid content format"
    INVALID_STORAGE = "Invalid storage configuration"
    INVALID_OPERATION = "Invalid operation"


@dataclass
class HistoryError:
    """A typed, user-reportable error."""
    code: ErrorCode
    message: str
    recoverable: bool = True
    content_reset: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "contentReset": self.content_reset,
        }


@dataclass
class Result(Generic[T]):
    """Either data or an error. Some recovery results carry both."""
    data: Optional[T] = None
    error: Optional[HistoryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Optional[T] = None) -> 'Result[T]':
        return cls(data=data)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        data: Optional[T] = None,
        recoverable: bool = True,
        content_reset: bool = False,
    ) -> 'Result[T]':
        return cls(
            data=data,
            error=HistoryError(
                code=code,
                message=message,
                recoverable=recoverable,
                content_reset=content_reset,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        elif isinstance(data, list):
            data = [d.to_dict() if hasattr(d, "to_dict") else d for d in data]
        return {
            "ok": self.ok,
            "data": data,
            "error": self.error.to_dict() if self.error else None,
        }
