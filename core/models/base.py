from sqlalchemy import Column, String, Integer, Float, DateTime, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "Column",
    "String",
    "Integer",
    "Float",
    "DateTime",
    "Boolean",
    "Text",
    "Index",
    "UniqueConstraint",
]
