"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi check-overdue
    gunicorn wsgi:app
"""

from buildtrack import create_app

app = create_app()
