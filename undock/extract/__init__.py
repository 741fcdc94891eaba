"""Layer extraction: blob formats, entry writing and per-platform fan-out."""
