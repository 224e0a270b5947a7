"""Application layer: use cases, prompts and business exceptions."""
