"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi process-reminders --dry-run
    gunicorn wsgi:app
"""

from compliance import create_app

app = create_app()
