import os

# Bind to the platform's injected PORT without relying on shell expansion.
port = os.getenv("PORT", "8000")
bind = f"0.0.0.0:{port}"

wsgi_app = "app:app"
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))
# Flutterwave calls retry with backoff, so leave room above FLW_TIMEOUT.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
