"""ASGI entry point: uvicorn main:app"""
from __future__ import annotations

from hgd.api import create_app


app = create_app()
