"""Block graph rewrites run by the transform pipeline."""
