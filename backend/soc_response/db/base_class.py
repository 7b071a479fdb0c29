# backend/soc_response/db/base_class.py
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on Postgres, plain JSON everywhere else (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
