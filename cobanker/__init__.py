"""
CoBanker - banking back-office ledger service

Accounts, transactions and the balance-integrity workflow behind a
role-gated REST API.
"""

__version__ = "1.0.0"
