from app.core.config import settings
from app.core.database import Base, TenantBase, get_db, engine, SessionLocal
