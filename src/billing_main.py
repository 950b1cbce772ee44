import asyncio
import logging

from config import CFG, DB_PATH, is_paystack_configured
from logging_setup import configure_logging
from database import init_db

configure_logging("billing")

from api_server import create_api_app, start_api_server, stop_api_server
from vendor_billing.maintenance import suspension_maintenance_loop
from vendor_billing.payments import MockPaymentGateway, PaymentGateway, PaystackGateway
from vendor_billing.repository import BillingRepository
from vendor_billing.settlement import SettlementEngine
from vendor_billing.subscription import SubscriptionLifecycle

logger = logging.getLogger(__name__)


def build_payment_gateway() -> PaymentGateway:
    """Gateway selected by PAYMENT_PROVIDER; falls back to mock without Paystack credentials."""
    provider = CFG.payment_provider
    if provider == "paystack":
        if is_paystack_configured():
            return PaystackGateway(
                CFG.paystack_secret_key,
                base_url=CFG.paystack_base_url,
                verify_attempts=CFG.paystack_verify_attempts,
                verify_delay_sec=CFG.paystack_verify_delay_sec,
            )
        logger.warning("PAYMENT_PROVIDER=paystack but PAYSTACK_SECRET_KEY is empty; using mock gateway.")
    elif provider != "mock":
        logger.warning("Unknown PAYMENT_PROVIDER=%r; using mock gateway.", provider)
    return MockPaymentGateway()


async def main() -> None:
    """Entry point for the billing API and maintenance runtime."""
    await init_db()
    logger.info("Billing database ready at %s", DB_PATH)

    store = BillingRepository()
    settlement = SettlementEngine(store)
    lifecycle = SubscriptionLifecycle(store)
    gateway = build_payment_gateway()
    logger.info("Payment provider: %s", gateway.provider_name)

    if not is_paystack_configured():
        logger.warning("PAYSTACK_SECRET_KEY is empty; webhook signatures will be rejected.")

    runner = await start_api_server(create_api_app(lifecycle, settlement, gateway))
    try:
        await suspension_maintenance_loop(lifecycle)
        # Maintenance disabled: keep serving the API.
        await asyncio.Event().wait()
    finally:
        await stop_api_server(runner)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
