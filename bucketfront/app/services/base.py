from __future__ import annotations


class ServiceError(Exception):
    """Base class for application service level exceptions."""
