"""
Access Certification Engine
SQLAlchemy extension instance shared by every model module.

Models are imported explicitly by ``create_app`` so table metadata is
complete before ``db.create_all()``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
