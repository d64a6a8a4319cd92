"""Deploy job stages: transfer and remote apply."""
