"""Persistence of users, projects, models and the usage ledger."""
