# backend/ledger/schemas/__init__.py
"""
Pydantic request/response schemas for the ledger API.

Usage:
    from ledger.schemas.transactions import TransactionCreate, TransactionResponse
    from ledger.schemas.actions import ActionRequest, ActionResponse
"""
