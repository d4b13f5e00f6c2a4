"""
Daily call orchestration and retry engine.

NOTE:
This package __init__ MUST stay lightweight. Do not import ORM models or the
FastAPI app here; submodules are imported explicitly by the entry points.
"""

__version__ = "0.1.0"
