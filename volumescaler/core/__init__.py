"""Reconciliation core: unit parsing, cooldown, sizing and the decision engine."""
