"""
Transmute - API Package
=======================

FastAPI application and routers.
"""
