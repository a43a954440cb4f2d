"""Model-driven app access & usage auditor for Dataverse environments."""

__version__ = "1.0.0"
