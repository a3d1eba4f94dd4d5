# backend/ledger/services/__init__.py
"""
Business logic for the ledger.

Services take a SQLAlchemy Session per call and raise the domain errors in
ledger.services.exceptions; they know nothing about HTTP.
"""
