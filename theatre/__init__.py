"""Console, console template and RBAC models with authorisation rules, admission handlers and lifecycle event recording."""

__version__ = "3.0.0"