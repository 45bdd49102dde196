import logging
from functools import lru_cache

from snapsplit.backend.db import get_supabase
from snapsplit.backend.services.bill_repository import InMemoryBillRepository, SupabaseBillRepository
from snapsplit.backend.services.bill_service import BillService
from snapsplit.backend.services.notifications.bill_notifier import get_notifier
from snapsplit.backend.services.sync.reconciliation import ReconciliationEngine
from snapsplit.backend.utils.settings import settings

log = logging.getLogger("snapsplit.main")


@lru_cache(maxsize=1)
def get_repository():
    if settings.BILL_STORE == "supabase":
        sb = get_supabase()
        if sb is None:
            raise RuntimeError("BILL_STORE=supabase needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        log.info("[STORE] using Supabase bill repository")
        return SupabaseBillRepository(sb)
    log.info("[STORE] using in-memory bill repository")
    return InMemoryBillRepository()


@lru_cache(maxsize=1)
def get_bill_notifier():
    return get_notifier()


@lru_cache(maxsize=1)
def get_engine() -> ReconciliationEngine:
    return ReconciliationEngine(get_repository(), get_bill_notifier())


@lru_cache(maxsize=1)
def get_bill_service() -> BillService:
    return BillService(get_repository(), get_bill_notifier())
