"""Mode resolution, providers, safety and element resolution."""
