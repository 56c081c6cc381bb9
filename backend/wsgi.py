# backend/wsgi.py
from poltrona import create_app

app = create_app()
