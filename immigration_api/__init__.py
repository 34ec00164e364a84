"""
Immigration Case Management API
===============================

Backend for an immigration-services practice:
1. Staff and client accounts with role-based access
2. Case tracking (applicants, documents, notes, status history, due dates)

FastAPI + SQLAlchemy, JWT sessions.
"""

__version__ = "1.0.0"
