"""
Result envelope returned by every inbound stock-sync operation.

Failures of secondary, best-effort steps never turn a result into an error;
they are reported through `warnings` instead.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from app.core.exceptions import MarketplaceSyncError
from app.core.utils import utc_now


class ErrorDetail(BaseModel):
    type: str
    message: str
    details: Optional[str] = None
    suggestions: List[str] = []
    upstream_warnings: List[Dict[str, Any]] = []
    timestamp: str


class OperationResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None
    warnings: List[str] = []
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    # HTTP status the web layer should use; not part of the body
    status_code: int = Field(default=200, exclude=True)

    @classmethod
    def ok(cls, data: Any = None, warnings: Optional[List[str]] = None, status_code: int = 200) -> "OperationResult":
        return cls(success=True, data=data, warnings=list(warnings or []), status_code=status_code)

    @classmethod
    def failure(cls, exc: MarketplaceSyncError, warnings: Optional[List[str]] = None) -> "OperationResult":
        return cls(
            success=False,
            error=ErrorDetail(**exc.to_dict()),
            warnings=list(warnings or []),
            status_code=exc.http_status,
        )
