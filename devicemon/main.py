"""
Entrypoint module for uvicorn.

Run as:

    uvicorn devicemon.main:app --reload
"""

from devicemon.api import app  # FastAPI app
