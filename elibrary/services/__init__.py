"""E-Library Client - Services Package

This package contains the modules that talk to the library gateway:
- HTTP client with public and authorized channels
- Session manager (login, logout, identity verification)
- Borrow coordinator (borrow, return, loan listings)
- Catalog and account services
"""
