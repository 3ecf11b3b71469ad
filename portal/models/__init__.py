"""
Client Portal Workflow
Shared SQLAlchemy handle.

All model modules import ``db`` from here; ``create_app`` binds it to the
Flask application with ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
