#!/usr/bin/env python3
"""
Example: Running the ledger engine end to end

Opens two accounts, funds one, transfers between them, reverses a deposit
and shows the holder-annotated history. Storage comes from LEDGER_DATABASE_URL
(``memory://`` or ``sqlite:///path``).
"""

import os
import sys
from decimal import Decimal

# Add the ledger package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bank_ledger.config import LedgerConfig
from bank_ledger.engine import LedgerEngine
from bank_ledger.errors import LedgerError
from bank_ledger.logging_config import setup_logging_from_config
from bank_ledger.principals import (
    CatalogItem, InMemoryCatalog, InMemoryPrincipalDirectory, Principal, Role
)
from bank_ledger.projections import LedgerProjection
from bank_ledger.rates import RateRefresher


def main():
    print("Bank Ledger - movement engine example")
    print("=" * 60)

    # 1. Configuration
    config = LedgerConfig()
    setup_logging_from_config(config)
    print(f"\n1. Database URL: {config.database_url}")
    print(f"   Transfer cap: {config.max_transfer_amount}, daily cap: {config.max_daily_transfer_amount}")

    # 2. Collaborators
    directory = InMemoryPrincipalDirectory()
    admin = directory.add(Principal(id="ADM", name="Branch Operator", role=Role.ADMIN))
    ana = directory.add(Principal(id="U1", name="Ana Lopez"))
    luis = directory.add(Principal(id="U2", name="Luis Perez"))
    catalog = InMemoryCatalog()
    catalog.add(CatalogItem(id="PHONE", name="Phone plan", price=Decimal('40.00')))

    engine = LedgerEngine.from_config(config, catalog)
    refresher = RateRefresher.from_config(config, engine.converter.repository, audit_trail=engine.audit_trail)
    print(f"\n2. Seeded {refresher.seed_defaults()} currencies")

    # 3. Accounts and movements
    ana_account = engine.accounts.get_by_owner(ana.id) or engine.create_account(ana.id)
    luis_account = engine.accounts.get_by_owner(luis.id) or engine.create_account(luis.id)
    print(f"\n3. Accounts {ana_account.account_number} and {luis_account.account_number}")

    engine.credit(ana_account.account_number, "500.00", "Opening balance", admin)
    engine.transfer(ana_account.account_number, luis_account.account_number, "300.00", "Rent", ana)
    engine.purchase(ana_account.id, "PHONE", "", ana)
    deposit = engine.deposit(luis_account.account_number, "25", "Cash in dollars", admin, currency="USD")
    print(f"   Deposit booked as {deposit.amount} at rate {deposit.exchange_rate}")

    # 4. Reversal within the window
    engine.reverse_deposit(deposit.id, admin)
    print("\n4. Deposit reversed")

    # 5. A rejected movement leaves everything untouched
    try:
        engine.transfer(ana_account.account_number, luis_account.account_number, "5000", "Too much", ana)
    except LedgerError as e:
        print(f"\n5. Rejected: {e.to_dict()}")

    # 6. Read side
    projection = LedgerProjection(engine.accounts, engine.journal, directory)
    details = projection.account_details(luis, luis_account.account_number)
    print(f"\n6. {details.account.holder_name}: balance {details.account.balance}")
    for view in details.recent_movements:
        print(f"   {view.movement.kind.value:<12} {view.movement.amount:>10} from {view.source_holder or '-'}")

    for account in (ana_account, luis_account):
        engine.verify_account(account.id)
    print(f"\n   Audit chain valid: {engine.audit_trail.verify_integrity()['valid']}")

    engine.storage.close()


if __name__ == "__main__":
    main()
