from sqlalchemy.dialects.postgresql import JSONB
from app.extensions import db

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = db.JSON().with_variant(JSONB(), "postgresql")
