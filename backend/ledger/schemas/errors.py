# backend/ledger/schemas/errors.py
"""
Error response body shared by every endpoint.

Built by the global exception handlers in main.py from the domain
exceptions in ledger/services/exceptions.py.
"""

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """
    Standard error response format.

    Example:
        {"error": "InsufficientSharesError",
         "message": "User alice has 10 shares in vault v1, cannot burn 15",
         "details": {"available": "10", "requested": "15"}}
    """

    error: str = Field(..., description="Exception class name (e.g., 'VaultNotFoundError')")
    message: str = Field(..., description="Human-readable error message")
    details: dict | None = Field(default=None, description="Additional error context")
