"""
Feature modules live under this package.

Each module owns its models, service and routes, and reuses the platform
primitives (auth, RBAC, audit, DB session).
"""
