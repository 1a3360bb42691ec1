"""
Contract Tracker — SQLAlchemy extension instance.

Every model module imports ``db`` from here:

    from tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
