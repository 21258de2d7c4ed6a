"""Session records, the session store and conflict detection."""
