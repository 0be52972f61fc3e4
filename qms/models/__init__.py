"""
Quality Management Backend
Database handle shared by every model module.

Model modules are imported by ``qms.create_app`` so that their tables are
registered on ``db.metadata`` before ``create_all`` or migrations run.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
