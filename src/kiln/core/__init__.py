"""Control-plane core: configuration, adapters, and execution tiers."""
