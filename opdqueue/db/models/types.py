from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON on the SQLite test database
JSONType = JSON().with_variant(JSONB(), "postgresql")
