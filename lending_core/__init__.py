"""
Lending Core

Installment-accounting engine for a lending back-office: schedule generation
for French amortization and flat-rate loans, deterministic payment
application, and append-only reversals, all in Decimal precision with a
hash-chained audit trail.
"""

__version__ = "1.0.0"
