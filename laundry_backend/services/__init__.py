"""
Service layer for the laundry billing backend.

Modules:
    errors          - BillingError hierarchy shared by every service
    common          - Hotel-name normalization, month/year parsing, money rounding
    data_layer      - SQLite schema, frame loaders and conditional writes
    reconciliation  - Invoice <-> email-send matching
    billing         - Monthly invoice summaries and payment records
    confirmation    - Dispatch and pickup/delivery state machines
    reporting       - Period statistics
"""
