"""
Import all models here to ensure they are registered with SQLAlchemy.
"""
# Import Base
from app.models.base import Base

# Import pipeline models
from app.models.import_job import ImportJob, ImportJobRow

# Record store
from app.models.patient import Patient

# This allows alembic to auto-discover all models when creating migrations
