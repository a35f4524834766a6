"""Application package for the C of Q study backend.

This package exposes the service, repository, retrieval and provider
modules used by the FastAPI application. Individual modules contain the
concrete implementations and documentation.
"""
