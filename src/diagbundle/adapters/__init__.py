"""Adapters connecting the core to SQLite and the bundle filesystem."""
