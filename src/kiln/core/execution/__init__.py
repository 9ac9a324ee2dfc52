"""Job execution tiers: warm pool, local cold-start runner, workspace container."""
