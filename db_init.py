# db_init.py
from pathlib import Path

from config import Config
from models import Base, make_engine, make_session_factory, get_or_create_settings


def main():
    # Ensure instance/ exists for SQLite local dev
    db_url = Config.SQLALCHEMY_DATABASE_URI
    if db_url.startswith("sqlite:///"):
        Path(db_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    # Ensure uploads/ exists for PDFs
    Path(Config.UPLOADS_DIR).mkdir(parents=True, exist_ok=True)

    engine = make_engine(db_url, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)

    # Settings is a singleton; create the empty row up front
    SessionLocal = make_session_factory(engine)
    with SessionLocal() as s:
        get_or_create_settings(s)
        s.commit()

    print("✅ Database initialized.")
    print(f"DB: {db_url}")
    print(f"Uploads dir: {Config.UPLOADS_DIR}")


if __name__ == "__main__":
    main()
