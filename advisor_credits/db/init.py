import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from advisor_credits.core.config import get_settings
from advisor_credits.models.audit_log import AuditLog
from advisor_credits.models.credit_account import CreditAccount
from advisor_credits.models.credit_assignment import CreditAssignment
from advisor_credits.models.credit_subscription import RecurringCreditSubscription
from advisor_credits.models.entitlement import Entitlement
from advisor_credits.models.failed_job import FailedJob
from advisor_credits.models.pricing import CreditPricing, CreditSubscriptionPlan
from advisor_credits.models.purchase_history import PurchaseHistoryEntry

DOCUMENT_MODELS = [
    CreditAccount,
    CreditAssignment,
    Entitlement,
    PurchaseHistoryEntry,
    RecurringCreditSubscription,
    CreditPricing,
    CreditSubscriptionPlan,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def client_kwargs(uri: str, timeout_seconds: float) -> dict:
    """Every driver call is bounded; a hung primary surfaces as an error, never a stall."""
    timeout_ms = int(timeout_seconds * 1000)
    kwargs = {
        "serverSelectionTimeoutMS": timeout_ms,
        "connectTimeoutMS": timeout_ms,
        "socketTimeoutMS": timeout_ms,
        "tz_aware": False,
    }
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    if _use_tls(uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return kwargs


async def init_db(database=None) -> None:
    """Bind Beanie documents. Pass a database to reuse an existing client (tests, scripts)."""
    if database is None:
        settings = get_settings()
        client = AsyncIOMotorClient(
            settings.mongodb_uri,
            **client_kwargs(settings.mongodb_uri, settings.store_timeout_seconds),
        )
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
