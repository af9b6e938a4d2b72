"""
Compliance Engine
Shared SQLAlchemy handle.

Every model module imports ``db`` from here so that a single metadata
registry backs ``db.create_all()`` and Flask-Migrate autogeneration.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
