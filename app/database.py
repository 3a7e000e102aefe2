from sqlmodel import SQLModel, Session, create_engine
from .config import DATABASE_URL

# SQLAlchemy database engine
engine = create_engine(DATABASE_URL)


def create_db_and_tables():
    # Register every table on the metadata before creating them
    from .models import challenge, challenge_member, check_in, period_outcome, challenge_event, device  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
