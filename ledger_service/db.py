from common.database import create_store_engine
from common.settings import settings
from ledger_service.models import Base

# Sessions come from Ledger, which owns every unit of work on this engine
engine = create_store_engine(settings.ledger_database_url)

def init_db():
    Base.metadata.create_all(bind=engine)
