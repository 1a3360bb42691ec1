"""
WSGI entry point and Flask-Migrate / Alembic CLI target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi apply-variation 42
"""

from tracker import create_app

app = create_app()
