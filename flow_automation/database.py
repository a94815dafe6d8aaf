"""
Database handle shared by models and the SQLAlchemy repository.
"""
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def init_db(app):
    """Create tables for every registered model."""
    # Import models so they register on the metadata
    from flow_automation import models  # noqa: F401

    with app.app_context():
        db.create_all()
