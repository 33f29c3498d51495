"""calbridge: multi-provider calendar event unification and update reconciliation."""

__version__ = "0.1.0"
