# db/base.py
# Declarative base shared by all tables.
# Keep this module free of table imports to avoid circular imports.

from sqlalchemy.orm import declarative_base

Base = declarative_base()
