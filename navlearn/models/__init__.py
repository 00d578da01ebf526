"""navlearn learning-store models.

Re-exports all SQLAlchemy models and database utilities.

Usage:
    from navlearn.models import QValue, ExperienceRecord
    from navlearn.models import Base, create_engine, init_db
"""

from navlearn.models.base import Base, create_engine, create_session_factory, init_db
from navlearn.models.learning import (
    ExperienceRecord,
    LearningSessionRecord,
    PolicyEntry,
    QValue,
    StateRepresentationRecord,
    StateValue,
)

__all__ = [
    # Base & Database
    "Base",
    "create_engine",
    "create_session_factory",
    "init_db",
    # Learning store
    "QValue",
    "PolicyEntry",
    "StateValue",
    "ExperienceRecord",
    "LearningSessionRecord",
    "StateRepresentationRecord",
]
