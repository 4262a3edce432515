"""
Tally — Currency Ledger for Community Forums
=============================================
The subsystem of record for every balance change in a forum's currencies
(credits, gold, …).  Forum activity arrives as domain events, the reward
listeners turn them into ledger grants, and a small REST API serves
balances, history, transfers and admin adjustments.

Package layout::

    tally/
    ├── __main__.py        # ``python -m tally`` — API server entry point
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # LedgerError hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # currencies, accounts, transactions, settings
    │   └── seed.py        # Default currencies and reward settings
    ├── engine/
    │   └── events.py      # Forum event envelopes + EventBus
    ├── services/
    │   ├── ledger_service.py   # Grant / deduct / transfer + reads
    │   ├── reward_service.py   # Idempotent reward listeners
    │   └── settings_service.py # Typed access to the settings table
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT + engine dependencies
        └── routes/        # Ledger + admin REST endpoints
"""

__version__ = "0.1.0"
