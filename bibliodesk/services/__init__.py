"""Bibliodesk - Services Package

This package contains service modules for external integrations:
- Gmail OAuth service (authorize, exchange, refresh, revoke)
- Gmail email service (MIME build and send)
- HTTP client abstraction
"""
