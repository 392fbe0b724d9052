from sqlalchemy.orm import sessionmaker
from common.database import create_store_engine
from common.settings import settings
from dispute_service.models import Base

engine = create_store_engine(settings.dispute_database_url)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    with SessionLocal() as db:
        yield db
