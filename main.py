"""Process entrypoint: management API plus the edge listeners.

    uvicorn main:app --port 8000          # management API only
    python main.py                        # API + edge (:80/:443)
"""
from __future__ import annotations

import uvicorn

from fto import db
from fto.api import create_app
from fto.edge import serve_edge
from fto.reconciler import build_reconciler
from fto.settings import settings

db.init_db()
reconciler = build_reconciler()
app = create_app(reconciler)


if __name__ == "__main__":
    serve_edge(reconciler.router, reconciler.responder)
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
