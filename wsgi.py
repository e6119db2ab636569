"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-permissions
    gunicorn wsgi:app
"""

from inspectflow import create_app

app = create_app()
