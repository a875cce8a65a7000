"""
Resolve a company id to its own lead database.

Every company's leads live in a separate database whose URL is built from
TENANT_DATABASE_URL_TEMPLATE. Engines are cached in a bounded LRU; the least
recently used engine is disposed when the cache is full. Tenant tables are
created the first time an engine is opened.
"""
import logging
import threading
from collections import OrderedDict
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.database import TenantBase
from app.core.exceptions import ValidationError
from app.services.lead_store import LeadStore

logger = logging.getLogger(__name__)


def _default_engine_factory(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=5)


class TenantResolver:
    """Bounded cache of per-company engines."""

    def __init__(
        self,
        url_template: Optional[str] = None,
        max_engines: Optional[int] = None,
        engine_factory: Optional[Callable[[str], Engine]] = None,
    ):
        self.url_template = url_template or settings.TENANT_DATABASE_URL_TEMPLATE
        self.max_engines = max_engines or settings.TENANT_MAX_ENGINES
        self._engine_factory = engine_factory or _default_engine_factory
        self._engines: "OrderedDict[str, Engine]" = OrderedDict()
        self._lock = threading.Lock()

    def database_url(self, company_id) -> str:
        if not company_id:
            raise ValidationError("Company ID is required")
        key = str(company_id).replace("-", "")
        return self.url_template.format(company_id=key)

    def get_engine(self, company_id) -> Engine:
        key = str(company_id)
        evicted = []

        with self._lock:
            engine = self._engines.get(key)
            if engine is not None:
                self._engines.move_to_end(key)
                return engine

            logger.info(f"Opening tenant database for company {key}")
            engine = self._engine_factory(self.database_url(company_id))
            TenantBase.metadata.create_all(bind=engine)
            self._engines[key] = engine

            while len(self._engines) > self.max_engines:
                old_key, old_engine = self._engines.popitem(last=False)
                evicted.append((old_key, old_engine))

        for old_key, old_engine in evicted:
            logger.info(f"Disposing idle tenant engine for company {old_key}")
            old_engine.dispose()

        return engine

    def get_session(self, company_id) -> Session:
        factory = sessionmaker(autocommit=False, autoflush=False, bind=self.get_engine(company_id))
        return factory()

    def get_lead_store(self, company_id) -> LeadStore:
        return LeadStore(self.get_session(company_id), company_id=company_id)

    def dispose_all(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            engine.dispose()

    def __len__(self):
        return len(self._engines)


tenant_resolver = TenantResolver()


def get_lead_store(company_id: UUID | str):
    """LeadStore bound to the company's database. Use it as a context manager."""
    return tenant_resolver.get_lead_store(company_id)
