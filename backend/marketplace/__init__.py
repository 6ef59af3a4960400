"""
POS Marketplace - Application Lifecycle Engine

Deadline-driven status transitions, status reconciliation and
revenue collection ledger for POS-financing applications.
"""
__version__ = "1.0.0"
