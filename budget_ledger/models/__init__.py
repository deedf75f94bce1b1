"""
Budget Variance Ledger — database models package.

The shared Flask-SQLAlchemy handle lives here so that every model module can
``from budget_ledger.models import db`` without importing the app factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
