from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from booking_service.core.config import settings

# The engine is the entry point to the database and owns the connection pool.
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

# Factory for per-request (or per-job) sessions.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        # Always closed, even if the endpoint raised
        db.close()
