"""HTTP surface for rankscope (FastAPI)."""
