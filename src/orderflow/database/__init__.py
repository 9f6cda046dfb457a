"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and mixins
- connection: async engine and session management
- models: ORM models for orders, labels, webhooks and the audit ledger
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []
