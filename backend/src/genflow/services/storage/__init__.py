"""System-owned blob storage and result materialization."""
