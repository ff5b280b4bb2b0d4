"""Memory storage, reconciliation and the typed records they exchange."""
