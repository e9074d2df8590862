"""
asgi.py -- Application assembly for User Admin.

This is the ONLY file that imports from both api/ and web/. It joins the two
layers into a single ASGI app without coupling them to each other.
api/main.py knows nothing about web/; web/routes.py knows nothing about api/.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from core.errors import StoreUnavailableError
from web.routes import router as web_router
from web.routes import store_unavailable_handler

app.include_router(web_router, tags=["Web UI"])
# Store failures inside route handlers render the HTML 503 page.
app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
