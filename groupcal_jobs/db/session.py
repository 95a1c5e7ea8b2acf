from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session

from groupcal_jobs.config.settings import settings

_database_url = make_url(str(settings.DATABASE_URL))

# Celery thread pools may use a connection from another thread
_connect_args = (
    {"check_same_thread": False} if _database_url.get_backend_name() == "sqlite" else {}
)

engine = create_engine(
    _database_url,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_sync_session():
    """Yield a session for one task invocation, rolling back on error"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
