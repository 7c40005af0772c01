"""Gunicorn production configuration for the product import service."""
import multiprocessing
import os

wsgi_app = "storefront.main:app"
chdir = "backend"
bind = os.environ.get("BIND", "0.0.0.0:8000")
worker_class = "uvicorn.workers.UvicornWorker"

# In-process import sessions are invisible to sibling workers.
if os.environ.get("SESSION_BACKEND", "memory") == "redis":
    workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
else:
    workers = 1

# ZIP parsing and image uploads keep requests open longer than usual.
timeout = 300
keepalive = 5
max_requests = 1000
max_requests_jitter = 100
accesslog = "-"
errorlog = "-"
loglevel = "info"
