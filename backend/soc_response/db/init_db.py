# backend/soc_response/db/init_db.py

from sqlalchemy.engine import Engine

from soc_response.db.base_class import Base

# Import models so they are registered with Base.metadata
from soc_response.models import event_record  # noqa: F401
from soc_response.models import incident_record  # noqa: F401
from soc_response.models import rule_record  # noqa: F401


def init_db(engine: Engine) -> None:
    """
    Create all tables (development only).
    In production, replace this with Alembic migrations.
    """
    Base.metadata.create_all(bind=engine)
