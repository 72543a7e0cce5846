from db.models import Base
from db.session import engine


def init_db(bind=None) -> None:
    Base.metadata.create_all(bind=bind or engine)
