"""
Base model class for filesync.

This module provides the declarative base shared by all database models.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
