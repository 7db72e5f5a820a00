"""Ledger-facing helpers: key loading, JSON-RPC client, instruction builders."""
