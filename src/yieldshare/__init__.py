"""YieldShare — pooled yield vault that splits yield with depositor-chosen communities."""

__version__ = "0.1.0"
