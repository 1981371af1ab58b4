"""
Venue feature modules.

Each module owns its models, service layer and admin routes, and reuses the
platform primitives (auth, RBAC, audit, storage, DB session).
"""
