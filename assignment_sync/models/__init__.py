"""
External Assignment Sync
SQLAlchemy extension instance shared by all models.

Usage:
    from assignment_sync.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
