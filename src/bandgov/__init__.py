"""Band governance engine: proposal lifecycle, vote resolution, declarative effects."""
