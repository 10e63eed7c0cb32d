from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "Boolean",
    "Column",
    "Date",
    "DateTime",
    "Float",
    "Integer",
    "String",
]
