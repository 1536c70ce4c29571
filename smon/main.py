"""
Entrypoint module for uvicorn.

Run as:

    uvicorn smon.main:app --reload
"""

from smon.api import app  # FastAPI app
