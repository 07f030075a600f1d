"""Domain package: ORM models and typed workflow configuration."""

from . import models  # noqa: F401

__all__ = ["models"]
