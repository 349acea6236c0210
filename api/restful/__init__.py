"""
Convention-based RESTful routing over SQLAlchemy models.
"""

from .repository import SqlAlchemyModelProvider
from .service import Router, RouterOptions

__all__ = ["Router", "RouterOptions", "SqlAlchemyModelProvider"]
