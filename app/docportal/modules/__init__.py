"""
Feature modules live under this package.

Each module owns its routes/models/service code and reuses the platform
primitives (auth, tenancy/RBAC, audit, storage, DB session).
"""
