"""Wires the service objects around one Database handle."""

from dataclasses import dataclass

from datamart.db.init import Database
from datamart.services.admin_wallet import AdminWalletService
from datamart.services.deposits import DepositReconciler
from datamart.services.fulfillment.factory import get_provider_for_bundle_type
from datamart.services.notifier import Notifier, SmsNotifier
from datamart.services.orders import OrderService, ProviderResolver
from datamart.services.paystack import PaystackClient
from datamart.services.stock import StockEngine
from datamart.services.wallet import WalletLedger


@dataclass
class Services:
    db: Database
    ledger: WalletLedger
    stock: StockEngine
    deposits: DepositReconciler
    orders: OrderService
    admin_wallet: AdminWalletService
    notifier: Notifier


def build_services(
    db: Database,
    *,
    gateway: PaystackClient | None = None,
    notifier: Notifier | None = None,
    provider_resolver: ProviderResolver = get_provider_for_bundle_type,
) -> Services:
    notifier = notifier or SmsNotifier.from_settings()
    ledger = WalletLedger(db)
    stock = StockEngine(db)
    return Services(
        db=db,
        ledger=ledger,
        stock=stock,
        deposits=DepositReconciler(db, ledger, gateway or PaystackClient.from_settings()),
        orders=OrderService(db, ledger, stock, provider_resolver=provider_resolver, notifier=notifier),
        admin_wallet=AdminWalletService(ledger, notifier),
        notifier=notifier,
    )
