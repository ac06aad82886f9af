from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from examhub.core.config import DATABASE_URL

def enable_sqlite_savepoints(engine) -> None:
    # pysqlite defers BEGIN on its own; take it over so SAVEPOINT nests inside the session transaction
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

_is_sqlite = DATABASE_URL.startswith("sqlite")
engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True, connect_args={"check_same_thread": False} if _is_sqlite else {})
if _is_sqlite: enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None) -> None:
    from examhub.models.orm import Base
    Base.metadata.create_all(bind=bind or engine)
