"""
WSGI and Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi poll-sources [--owner X]
    gunicorn wsgi:app
"""

from assignment_sync import create_app

app = create_app()
