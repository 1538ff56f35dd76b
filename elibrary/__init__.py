"""E-Library Client - Core Package

This package contains the client-side core of the lending library:
- Session lifecycle and authorization handling (services/session_manager.py)
- Borrow/return orchestration (services/borrow_coordinator.py)
- Catalog browsing and account management services
- Wire models, error taxonomy and token persistence
"""
