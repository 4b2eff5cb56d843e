"""
Core modules for kroniq-guard.

This package contains the token ledger, access resolution, entitlement
checks, intent classification and routing.
"""
