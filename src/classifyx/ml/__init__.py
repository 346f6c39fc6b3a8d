"""Model loading, preprocessing, inference and ranking."""
