"""Application package: booking admission engine and workflow automation."""

from .core import db
from .domain import models

__all__ = ["db", "models"]
