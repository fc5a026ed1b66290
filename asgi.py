"""
asgi.py -- The served DevSolve application: JSON API plus HTML pages.

api/main.py builds the FastAPI app and its /api routes; web/routes.py holds the
pages. Joining them here keeps either package free of imports from the other.

Run with:  uvicorn asgi:app --reload
"""

from pathlib import Path

from fastapi.staticfiles import StaticFiles

from api.main import app
from web.routes import router as web_router

_STATIC_DIR = Path(__file__).parent / "web" / "static"

app.include_router(web_router, tags=["Web UI"])
# /static is on the route guard's bypass list, so assets load for every visitor.
app.mount("/static", StaticFiles(directory=str(_STATIC_DIR)), name="static")
