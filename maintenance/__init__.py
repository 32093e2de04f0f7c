"""Supplier access codes and follow-up reminders for condominium maintenance."""

__version__ = "0.1.0"
