# backend/wsgi.py
from distpos import create_app

app = create_app()
