"""
Declarative base for the ORM models (SQLAlchemy 2.0 style)
"""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# metadata used by migrations
metadata = Base.metadata
