"""Image acquisition: source parsing, cache keys, fetching and manifests."""
