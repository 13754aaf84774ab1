"""Gunicorn configuration for production deployment.

Usage:
    gunicorn -c gunicorn.conf.py billing_sync.main:app
"""
from __future__ import annotations

import multiprocessing
import os

# ── Server socket ────────────────────────────────────────
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8001")

# ── Worker processes ─────────────────────────────────────
workers = int(os.getenv("GUNICORN_WORKERS", str(multiprocessing.cpu_count() * 2 + 1)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# ── Timeouts ─────────────────────────────────────────────
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

# ── Request limits ───────────────────────────────────────
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "1000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "50"))

# ── Preloading ───────────────────────────────────────────
# Each worker owns its engine and httpx clients, so preloading is off by default.
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

# ── Logging ──────────────────────────────────────────────
accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")  # stdout
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")    # stderr
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# ── Process naming ───────────────────────────────────────
proc_name = "billing_sync"
