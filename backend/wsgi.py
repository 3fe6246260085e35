# backend/wsgi.py
from topup import create_app

app = create_app()
