"""Quality-control helpers (flags attached to per-frame decision records)."""
