"""Build job stages: tag, build, image, export."""
