# Overview: WSGI/CLI entry point (FLASK_APP=wsgi.py).

from rma_ledger import create_app

app = create_app()
