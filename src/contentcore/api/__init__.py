"""HTTP boundary helpers."""
