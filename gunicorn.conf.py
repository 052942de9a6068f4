"""
Gunicorn configuration for the points ledger.

Run with: gunicorn -c gunicorn.conf.py run:app
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Sync workers; each request runs one short ledger transaction
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
worker_class = 'sync'
timeout = 30
keepalive = 5

# Logging
accesslog = '-'  # stdout
errorlog = '-'   # stderr
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'pointsledger'

# Load the app (and start the expiration scheduler) once in the master
preload_app = True

graceful_timeout = 30
