"""Per-node reconcile loop."""
