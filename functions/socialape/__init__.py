"""
Backend package for the Social Ape API.

This package provides a FastAPI application plus store, storage, identity and
queue abstractions. Follow-up work for a write (notifications, image
propagation, cascading deletes) goes through an outbox that the worker consumes.
"""
