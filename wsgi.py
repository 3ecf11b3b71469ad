"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflow-catalog
    flask --app wsgi run-workflow-sweep --job phase_time_elapsed_sweep
    gunicorn wsgi:app
"""

from portal import create_app

app = create_app()
