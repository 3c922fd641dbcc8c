"""
PlanHub data models.

The shared Flask-SQLAlchemy handle lives here so every model module and
service imports the same ``db`` instance:

    from planhub.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
