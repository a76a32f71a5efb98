"""
Gunicorn settings for the trade ledger

    gunicorn -c gunicorn_conf.py webhook_server:app
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"

# Rate limiter counters are per worker; ledger writes are safe with any count
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
# Covers the price oracle timeout plus settlement
timeout = 60

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "trade_ledger"

# Each worker builds its own engine pool and scheduler after fork
preload_app = False
